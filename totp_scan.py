"""
TOTP scan - import a secret from a QR code image

OpenCV is slow to import, so cv2 is only loaded once an image is
actually decoded.
"""

import logging
import os
from urllib.parse import parse_qs, urlsplit

from totp_store import DecodeFailure, EntryManager, normalize_secret

logger = logging.getLogger("totp.scan")

# Blank border added around pure barcode images, in pixels
QUIET_ZONE = 32


def decode_qr_image(image_path: str, pure_barcode: bool = False) -> str:
    """Return the text of the QR code in an image file"""
    import cv2

    if not os.path.exists(image_path):
        raise DecodeFailure(f"File not found: {image_path}")

    logger.debug("Reading image: %s", image_path)
    img = cv2.imread(image_path)
    if img is None:
        raise DecodeFailure(f"Could not read image: {image_path}")

    if pure_barcode:
        # Cropped screenshots often lack the quiet zone the detector needs.
        img = cv2.copyMakeBorder(
            img, QUIET_ZONE, QUIET_ZONE, QUIET_ZONE, QUIET_ZONE,
            cv2.BORDER_CONSTANT, value=(255, 255, 255),
        )

    logger.debug("Detecting QR code...")
    detector = cv2.QRCodeDetector()
    try:
        data, _, _ = detector.detectAndDecode(img)
    except cv2.error as e:
        raise DecodeFailure(f"Could not decode QR code: {e}") from e

    if not data:
        hint = "" if pure_barcode else " (try --barcode)"
        raise DecodeFailure(f"No QR code found in image{hint}")
    return data


def parse_totp_uri(uri: str) -> str:
    """Extract the normalized secret from an otpauth://totp/ URI"""
    try:
        parsed = urlsplit(uri)
        params = parse_qs(parsed.query)
    except ValueError as e:
        raise DecodeFailure(f"Could not parse QR code text: {e}") from e

    # hostname would be lowercased; the host must be "totp" as written
    if parsed.scheme != "otpauth" or parsed.netloc != "totp":
        raise DecodeFailure("Given QR code is not for TOTP")

    return normalize_secret(params.get("secret", [""])[0])


def resolve_name(manager: EntryManager, name: str, ask) -> str:
    """Return `name`, or a replacement from `ask`, that is free in the keyring.

    `ask(taken)` is called with the colliding name and returns the next
    candidate; blank answers are asked again.
    """
    while manager.name_exists(name):
        answer = ask(name)
        while not answer or not answer.strip():
            answer = ask(name)
        name = answer.strip()
    return name


def import_image(manager: EntryManager, name: str, image_path: str, ask,
                 pure_barcode: bool = False) -> str:
    """Decode, validate and register the QR code in an image.

    Nothing is written before the final add, so any failure leaves both
    stores untouched. Returns the name the entry was registered under.
    """
    data = decode_qr_image(image_path, pure_barcode=pure_barcode)
    logger.debug("Found QR code data (%d chars)", len(data))

    secret = parse_totp_uri(data)
    name = resolve_name(manager, name, ask)
    manager.add_entry(name, secret)
    return name
