"""Image encoding for backends that take the photo inline as a data URL."""
import base64
import hashlib
import io
import logging
from typing import Optional

from PIL import Image, UnidentifiedImageError

from purrplexed.config import settings
from purrplexed.services.exceptions import InvalidImageError


logger = logging.getLogger(__name__)


def fingerprint(image_data: bytes) -> str:
    """Short content hash used to correlate log lines of one run."""
    return hashlib.sha256(image_data).hexdigest()[:16]


class ImageEncoder:
    """Downscales and JPEG-compresses photos for inline upload."""

    def __init__(
        self,
        max_dimension: Optional[int] = None,
        quality: Optional[int] = None,
    ):
        self.max_dimension = max_dimension or settings.max_image_dimension
        self.quality = quality or settings.jpeg_quality

    def validate(self, image_data: bytes) -> None:
        """Raise InvalidImageError unless the bytes decode as an image."""
        if not image_data:
            raise InvalidImageError("Photo is empty")
        try:
            with Image.open(io.BytesIO(image_data)) as img:
                img.verify()
        except (UnidentifiedImageError, OSError, SyntaxError) as e:
            raise InvalidImageError("Photo could not be read as an image") from e

    def encode_jpeg(self, image_data: bytes) -> bytes:
        """
        Re-encode image bytes as a JPEG whose longest side fits max_dimension.

        Args:
            image_data: Raw image bytes in any format Pillow can read

        Returns:
            JPEG bytes

        Raises:
            InvalidImageError: If the bytes are not a readable image
        """
        try:
            with Image.open(io.BytesIO(image_data)) as img:
                # Flatten transparency onto white, JPEG has no alpha
                if img.mode in ("RGBA", "LA", "P"):
                    img = img.convert("RGBA")
                    rgb_img = Image.new("RGB", img.size, (255, 255, 255))
                    rgb_img.paste(img, mask=img.split()[3])
                    img = rgb_img
                elif img.mode != "RGB":
                    img = img.convert("RGB")

                if max(img.size) > self.max_dimension:
                    ratio = self.max_dimension / max(img.size)
                    new_size = (
                        max(1, round(img.width * ratio)),
                        max(1, round(img.height * ratio)),
                    )
                    img = img.resize(new_size, Image.Resampling.LANCZOS)

                output = io.BytesIO()
                img.save(output, format="JPEG", quality=self.quality, optimize=True)
        except (UnidentifiedImageError, OSError) as e:
            raise InvalidImageError("Photo could not be read as an image") from e

        encoded = output.getvalue()
        logger.debug(
            "Encoded image %d -> %d bytes (max_dimension=%d, quality=%d)",
            len(image_data),
            len(encoded),
            self.max_dimension,
            self.quality,
        )
        return encoded

    def to_data_url(self, image_data: bytes) -> str:
        """Encode image bytes as a ``data:image/jpeg;base64,...`` URL."""
        jpeg = self.encode_jpeg(image_data)
        return "data:image/jpeg;base64," + base64.b64encode(jpeg).decode("ascii")
