from __future__ import annotations

from io import BytesIO

import qrcode
from PIL import Image
from qrcode.image.pil import PilImage


def racepack_code(bib_number: str, participant_id: str) -> str:
    """Code printed on the race pack; changes whenever the bib does."""
    return f"RP{bib_number}{participant_id[:8].upper()}"


def qr_png(payload: str, scale: int = 8) -> bytes:
    """Greyscale PNG of ``payload``, sized for the check-in scanners.

    Quartile error correction so a creased or wet pack label still scans.
    """
    qr = qrcode.QRCode(error_correction=qrcode.constants.ERROR_CORRECT_Q, box_size=scale, border=4)
    qr.add_data(payload)
    qr.make(fit=True)
    img: Image.Image = qr.make_image(image_factory=PilImage).convert("L")
    out = BytesIO()
    img.save(out, format="PNG", optimize=True)
    return out.getvalue()
