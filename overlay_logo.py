"""
Image side of the overlay pipeline.

load_asset reads only the header of fetched bytes (format, EXIF-rotated size)
so layout can be resolved before any pixels are decoded. Decoding, the RGBA
resize, the blurred drop shadow and the final composite to PNG all happen in
overlay_logo_on_image, which reports undecodable inputs as InvalidBaseImage or
InvalidLogoImage.
"""

import logging
from dataclasses import dataclass
from io import BytesIO
from typing import Optional, Type

from PIL import Image, ImageFilter, ImageOps, UnidentifiedImageError

from errors import CompositeError, DecodeError, InvalidBaseImage, InvalidLogoImage, OverlayError
from layout import ResolvedGeometry

logger = logging.getLogger(__name__)

SHADOW_OFFSET = 10
SHADOW_BLUR_RADIUS = 6
SHADOW_OPACITY = 0.5

# EXIF orientations that rotate the image by 90 degrees
_SWAPPED_ORIENTATIONS = {5, 6, 7, 8}
_EXIF_ORIENTATION = 0x0112

_DECODE_ERRORS = (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError,
                  SyntaxError, EOFError)


@dataclass(frozen=True)
class ImageAsset:
    """Raw image bytes plus the dimensions measured from their header."""

    data: bytes
    width: int
    height: int
    format: Optional[str] = None


def load_asset(data: bytes, error_cls: Type[DecodeError] = InvalidBaseImage) -> ImageAsset:
    """
    Read an image's format and display dimensions without decoding its pixels.

    Args:
        data: The image as bytes
        error_cls: DecodeError subclass to raise when the bytes are unusable

    Returns:
        ImageAsset with width/height as displayed (EXIF rotation applied)
    """
    try:
        with Image.open(BytesIO(data)) as img:
            width, height = img.size
            fmt = img.format
            orientation = None
            # PNG getexif() decodes the whole file unless the eXIf chunk came before the pixels
            if img.format != 'PNG' or 'exif' in img.info:
                orientation = img.getexif().get(_EXIF_ORIENTATION)
    except _DECODE_ERRORS as e:
        raise error_cls(f"Cannot read image header: {e}")

    if not width or not height:
        raise error_cls(f"Image has no usable dimensions ({width}x{height})")

    if orientation in _SWAPPED_ORIENTATIONS:
        width, height = height, width

    return ImageAsset(data=data, width=width, height=height, format=fmt)


def _decode(asset: ImageAsset, error_cls: Type[DecodeError]) -> Image.Image:
    try:
        img = Image.open(BytesIO(asset.data))
        img.load()
        img = ImageOps.exif_transpose(img)
    except _DECODE_ERRORS as e:
        raise error_cls(f"Cannot decode image: {e}")

    if not img.width or not img.height:
        raise error_cls('Decoded image has no usable dimensions')
    return img


def _has_alpha(img: Image.Image) -> bool:
    return img.mode in ('RGBA', 'LA', 'PA') or (img.mode == 'P' and 'transparency' in img.info)


def resize_logo(logo: Image.Image, width: int, height: int) -> Image.Image:
    """Resize a logo to the target box, always returning an RGBA image."""
    return logo.convert('RGBA').resize((width, height), Image.Resampling.LANCZOS)


def add_drop_shadow(logo: Image.Image, offset: int = SHADOW_OFFSET,
                    blur_radius: float = SHADOW_BLUR_RADIUS,
                    opacity: float = SHADOW_OPACITY) -> Image.Image:
    """
    Put a soft dark shadow underneath a logo.

    The shadow is the logo's alpha mask, darkened to black, blurred and
    shifted ``offset`` pixels down and right. The returned canvas is
    ``offset`` pixels wider and taller than the logo so the shadow is not
    clipped. The input image is not modified.

    Args:
        logo: The resized logo
        offset: Shadow shift in pixels (at least 1)
        blur_radius: Gaussian blur radius for the shadow
        opacity: Shadow strength relative to the logo's alpha, 0..1

    Returns:
        New RGBA image containing shadow and logo
    """
    logo = logo.convert('RGBA')
    offset = max(1, offset)

    canvas_size = (logo.width + offset, logo.height + offset)

    # Blur on the full canvas so the shadow's top and left edges soften
    mask = Image.new('L', canvas_size, 0)
    mask.paste(logo.getchannel('A').point(lambda a: int(a * opacity)), (offset, offset))
    mask = mask.filter(ImageFilter.GaussianBlur(blur_radius))

    canvas = Image.new('RGBA', canvas_size, (0, 0, 0, 0))
    canvas.putalpha(mask)
    canvas.alpha_composite(logo, (0, 0))
    return canvas


def overlay_logo_on_image(base: ImageAsset, logo: ImageAsset, geometry: ResolvedGeometry,
                          add_shadow: bool = False, shadow_offset: int = SHADOW_OFFSET) -> bytes:
    """
    Overlay a logo image onto a base image using resolved geometry.

    Args:
        base: The base image asset
        logo: The logo image asset
        geometry: Target logo size and placement from layout.resolve
        add_shadow: Draw a drop shadow under the logo
        shadow_offset: Shadow shift in pixels

    Returns:
        The composited image as PNG bytes

    Raises:
        InvalidBaseImage, InvalidLogoImage: an input cannot be decoded
        CompositeError: any other failure while compositing or encoding
    """
    base_img = _decode(base, InvalidBaseImage)
    logo_img = _decode(logo, InvalidLogoImage)

    try:
        keep_alpha = _has_alpha(base_img)
        base_img = base_img.convert('RGBA')
        base_width, base_height = base_img.size

        logo_img = resize_logo(logo_img, geometry.width, geometry.height)
        if add_shadow:
            logo_img = add_drop_shadow(logo_img, shadow_offset)

        x, y = geometry.placement.offset(base_width, base_height, logo_img.width, logo_img.height)
        logger.debug("Placing %dx%d logo at (%d, %d) on %dx%d base",
                     logo_img.width, logo_img.height, x, y, base_width, base_height)

        # Composite through a full-size layer so logos hanging off the edge are clipped
        layer = Image.new('RGBA', base_img.size, (0, 0, 0, 0))
        layer.paste(logo_img, (x, y))
        result = Image.alpha_composite(base_img, layer)
        if not keep_alpha:
            result = result.convert('RGB')

        # Convert back to bytes
        output = BytesIO()
        result.save(output, format='PNG')
        return output.getvalue()
    except OverlayError:
        raise
    except Exception as e:
        raise CompositeError(f"Compositing failed: {e}") from e
