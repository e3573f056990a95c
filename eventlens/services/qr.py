import io
import logging
from typing import Optional

import qrcode
from qrcode.constants import ERROR_CORRECT_M
from qrcode.image.pil import PilImage

from eventlens.core.settings import settings
from eventlens.services.s3_storage import ObjectStorage

logger = logging.getLogger(__name__)


def join_url(share_code: str) -> str:
    return f"{settings.FRONTEND_URL.rstrip('/')}/termsAndPolicy/{share_code}"


def render_join_qr(share_code: str, box_size: int = 10, border: int = 4) -> bytes:
    """PNG bytes of a QR code pointing guests at the event's join page."""
    qr = qrcode.QRCode(
        version=None,
        error_correction=ERROR_CORRECT_M,
        box_size=box_size,
        border=border,
    )
    qr.add_data(join_url(share_code))
    qr.make(fit=True)
    img = qr.make_image(fill_color="#000000", back_color="#ffffff", image_factory=PilImage)
    pil = img.get_image()
    buf = io.BytesIO()
    pil.save(buf, format="PNG")
    return buf.getvalue()


def generate_join_qr(share_code: str, storage: ObjectStorage) -> Optional[str]:
    """Store the join QR and return its URL; None if rendering or upload fails."""
    try:
        png = render_join_qr(share_code)
        return storage.put(f"qr/{share_code}.png", png, "image/png")
    except Exception:
        logger.exception("qr.generate_failed", extra={"share_code": share_code})
        return None
