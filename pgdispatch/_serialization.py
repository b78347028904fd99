from typing import Any

import msgspec

__all__ = ("decode_json", "encode_json")

_encoder = msgspec.json.Encoder(enc_hook=str)
_decoder = msgspec.json.Decoder()


def encode_json(data: Any, *, as_bytes: bool = False) -> "str | bytes":
    encoded = _encoder.encode(data)
    if as_bytes:
        return encoded
    return encoded.decode("utf-8")


def decode_json(data: "str | bytes") -> Any:
    return _decoder.decode(data)
