import io

import segno

CONTENT_TYPE = "image/png"


def encode_symbol(payload: str, width: int = 300, border: int = 1) -> bytes:
    """QR code (error correction M) for `payload` as PNG, about `width` px."""
    qr = segno.make_qr(payload, error="m")
    modules, _ = qr.symbol_size(scale=1, border=border)
    buf = io.BytesIO()
    qr.save(buf, kind="png", scale=max(1, width // modules), border=border)
    return buf.getvalue()
