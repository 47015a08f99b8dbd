"""Per-instance image conversion for locally assembled archives."""

import io
from typing import Callable, Tuple

from PIL import Image, UnidentifiedImageError

from studyzip.archive.errors import PartialConversionError

# fn(instance_id, raw bytes) -> (entry file name, converted bytes)
Converter = Callable[[str, bytes], Tuple[str, bytes]]

_EXTENSIONS = {
    "JPEG": "jpg",
    "PNG": "png",
    "TIFF": "tif",
    "WEBP": "webp",
}


class ImageConverter:
    """Re-encodes a rendered instance into one target image format.

    JPEG output drops alpha and palette modes first, which the encoder
    cannot write.
    """

    def __init__(self, image_format: str = "JPEG", quality: int = 90):
        fmt = image_format.upper()
        if fmt not in _EXTENSIONS:
            raise ValueError(
                f"Unsupported image format '{image_format}'. "
                f"Available: {list(_EXTENSIONS)}"
            )
        self.image_format = fmt
        self.quality = quality

    @property
    def extension(self) -> str:
        return _EXTENSIONS[self.image_format]

    def __call__(self, instance_id: str, data: bytes) -> Tuple[str, bytes]:
        if not data:
            raise PartialConversionError(instance_id, "empty source file")
        try:
            with Image.open(io.BytesIO(data)) as img:
                img.load()
                if self.image_format == "JPEG" and img.mode not in ("L", "RGB"):
                    img = img.convert("RGB")
                out = io.BytesIO()
                img.save(out, format=self.image_format, quality=self.quality)
        except (UnidentifiedImageError, OSError, ValueError) as e:
            raise PartialConversionError(instance_id, str(e)) from e
        return f"{instance_id}.{self.extension}", out.getvalue()
