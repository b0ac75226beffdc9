"""
Logo layout: how big the logo is drawn and where it goes on the base image.

Request values are turned into a Placement once, at the request boundary:
either a named gravity with padding (Anchor) or a fixed top-left pixel
offset (Explicit). Unknown positions and unusable widths fall back to
defaults instead of failing the request.
"""
import math
from dataclasses import dataclass
from typing import Optional, Tuple, Union

from errors import ValidationError

MIN_LOGO_WIDTH = 50
DEFAULT_LOGO_WIDTH = 0.2
DEFAULT_POSITION = 'top-right'

POSITION_GRAVITY = {
    'top-right': 'northeast',
    'top-left': 'northwest',
    'bottom-right': 'southeast',
    'bottom-left': 'southwest',
    'center': 'centre',
}


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


@dataclass(frozen=True)
class Anchor:
    """Place the logo against a corner (or the centre) of the base image."""

    gravity: str
    padding: int = 0

    def offset(self, base_width: int, base_height: int,
               logo_width: int, logo_height: int) -> Tuple[int, int]:
        pad = self.padding
        right = base_width - logo_width - pad
        bottom = base_height - logo_height - pad

        if self.gravity == 'northwest':
            x, y = pad, pad
        elif self.gravity == 'southeast':
            x, y = right, bottom
        elif self.gravity == 'southwest':
            x, y = pad, bottom
        elif self.gravity == 'centre':
            x, y = (base_width - logo_width) // 2, (base_height - logo_height) // 2
        else:
            x, y = right, pad

        # Never push the logo's top-left corner off the canvas
        return max(0, x), max(0, y)


@dataclass(frozen=True)
class Explicit:
    """Place the logo's top-left corner at a fixed pixel position."""

    x: int
    y: int

    def offset(self, base_width: int, base_height: int,
               logo_width: int, logo_height: int) -> Tuple[int, int]:
        return self.x, self.y


Placement = Union[Anchor, Explicit]


@dataclass(frozen=True)
class ResolvedGeometry:
    width: int
    height: int
    placement: Placement


def parse_position(value) -> str:
    """Map a position keyword to a gravity, defaulting to top-right."""
    if isinstance(value, str):
        gravity = POSITION_GRAVITY.get(value.strip().lower())
        if gravity:
            return gravity
    return POSITION_GRAVITY[DEFAULT_POSITION]


def parse_logo_width(value) -> float:
    """
    Interpret the requested logo width.

    Values in (0, 1] are a fraction of the base width, values above 1 are
    pixels. Anything else (missing, non-numeric, zero, negative, NaN)
    becomes DEFAULT_LOGO_WIDTH.
    """
    if value is None or isinstance(value, bool):
        return DEFAULT_LOGO_WIDTH
    try:
        width = float(value)
    except (TypeError, ValueError):
        return DEFAULT_LOGO_WIDTH
    if not math.isfinite(width) or width <= 0:
        return DEFAULT_LOGO_WIDTH
    return width


def _parse_coordinate(name: str, value) -> int:
    if isinstance(value, bool):
        raise ValidationError(f'{name} must be a non-negative integer')
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if not isinstance(value, int) or value < 0:
        raise ValidationError(f'{name} must be a non-negative integer')
    return value


def build_placement(position=None, x=None, y=None, padding: int = 0) -> Placement:
    """
    Build the placement for a request.

    Args:
        position: Position keyword from the request (may be missing or unknown)
        x: Explicit left offset in pixels, or None
        y: Explicit top offset in pixels, or None
        padding: Inward offset from the chosen edges for corner gravities

    Returns:
        Explicit when both coordinates are given (position is ignored),
        otherwise an Anchor

    Raises:
        ValidationError: only one coordinate given, or a coordinate is invalid
    """
    if x is not None or y is not None:
        if x is None or y is None:
            raise ValidationError('x and y must be provided together')
        return Explicit(_parse_coordinate('x', x), _parse_coordinate('y', y))

    gravity = parse_position(position)
    if gravity == 'centre':
        return Anchor(gravity, 0)
    return Anchor(gravity, max(0, padding))


def target_width(base_width: int, width_spec: float) -> int:
    """
    Logo width in pixels: floor(base * spec) for fractions, half-up rounding for pixels.

    A pixel width wider than the base is out of range and falls back to
    DEFAULT_LOGO_WIDTH of the base width.
    """
    if width_spec > 1:
        width = _round_half_up(width_spec)
        if width <= base_width:
            return max(MIN_LOGO_WIDTH, int(width))
        width_spec = DEFAULT_LOGO_WIDTH
    return max(MIN_LOGO_WIDTH, int(math.floor(base_width * width_spec)))


def resolve(base_width: int, base_height: int, logo_width: int, logo_height: int,
            width_spec: float, placement: Optional[Placement] = None) -> ResolvedGeometry:
    """
    Turn request layout values into concrete logo geometry.

    Args:
        base_width: Measured width of the base image
        base_height: Measured height of the base image
        logo_width: Natural width of the logo
        logo_height: Natural height of the logo
        width_spec: Output of parse_logo_width
        placement: Output of build_placement (defaults to top-right, no padding)

    Returns:
        ResolvedGeometry with the logo's target size and placement
    """
    if placement is None:
        placement = Anchor(POSITION_GRAVITY[DEFAULT_POSITION])

    width = target_width(base_width, width_spec)
    # Height follows the logo's own aspect ratio
    height = max(1, _round_half_up(logo_height * width / logo_width))
    if height > base_height:
        # Tall logos are fitted to the base height, even below MIN_LOGO_WIDTH
        height = max(1, base_height)
        width = max(1, _round_half_up(logo_width * height / logo_height))

    return ResolvedGeometry(width=width, height=height, placement=placement)
