import base64
import io
import json
import uuid

import qrcode


def new_qr_token() -> str:
    return str(uuid.uuid4())


def qr_payload(token: str) -> str:
    """What the QR image encodes; students may paste this or the bare token"""
    return json.dumps({"t": token}, separators=(",", ":"))


def render_qr_data_url(token: str) -> str:
    """Render the token payload as a PNG data URL"""
    img = qrcode.make(qr_payload(token))
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    qr_b64 = base64.b64encode(buf.getvalue()).decode("utf-8")
    return f"data:image/png;base64,{qr_b64}"
