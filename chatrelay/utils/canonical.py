
import orjson


def canonical_bytes(d: dict) -> bytes:
    # sort keys & remove whitespace so identical frames encode identically
    return orjson.dumps(d, option=orjson.OPT_SORT_KEYS)


def pretty_bytes(d: dict) -> bytes:
    return orjson.dumps(d, option=orjson.OPT_INDENT_2)
