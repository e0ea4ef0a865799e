import base64
import io

import qrcode
from qrcode.constants import ERROR_CORRECT_M

from . import settings


def ticket_url(ticket_id: str, base_url: str | None = None) -> str:
    return f"{(base_url or settings.APP_URL).rstrip('/')}/tickets/{ticket_id}"


def legacy_payload(event_id: str, ticket_id: str, user_id: str) -> str:
    return f"{event_id}:{ticket_id}:{user_id}"


def render_data_url(data: str) -> str:
    """PNG data URL for ``data``; medium error correction scans reliably
    from phone cameras."""
    qr = qrcode.QRCode(
        error_correction=ERROR_CORRECT_M,
        box_size=12,
        border=2,
    )
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode()
