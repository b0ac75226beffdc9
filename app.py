"""
Image Overlay Service
Composites a logo/watermark onto a base image and returns a PNG.

Install dependencies:
pip install -e .

Run locally:
python app.py

Deploy to Railway/Render with Procfile:
web: gunicorn app:app
"""

from flask import Flask, request, jsonify, send_file
from io import BytesIO
import base64
import binascii
import logging
import math
import re
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Optional, Type, Union

from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from config import Settings, configure_logging
from errors import (
    DecodeError,
    InvalidBaseImage,
    InvalidLogoImage,
    OverlayError,
    SecurityError,
    ValidationError,
)
from layout import DEFAULT_LOGO_WIDTH, DEFAULT_POSITION, Placement, build_placement, parse_logo_width, resolve
from overlay_logo import ImageAsset, load_asset, overlay_logo_on_image
from rate_limit import FixedWindowRateLimiter
from secure_fetch import CancelToken, SecureFetcher
from url_security import UrlValidator

logger = logging.getLogger(__name__)

GENERIC_ERROR = 'Image processing failed'

_DATA_URL_PREFIX_RE = re.compile(r"^data:.*?;base64,", re.IGNORECASE)
_WHITESPACE_RE = re.compile(r"\s+")


# ---------- Request model ----------

@dataclass(frozen=True)
class UrlSource:
    url: str


@dataclass(frozen=True)
class InlineSource:
    data: bytes


ImageSource = Union[UrlSource, InlineSource]


@dataclass(frozen=True)
class OverlayRequest:
    image: ImageSource
    logo: ImageSource
    logo_width: float
    placement: Placement
    add_shadow: bool


def _decode_base64(field: str, value, max_bytes: int) -> bytes:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f'{field} must be a non-empty base64 string')

    data = _DATA_URL_PREFIX_RE.sub('', value.strip())
    data = _WHITESPACE_RE.sub('', data)
    missing_padding = len(data) % 4
    if missing_padding:
        data += '=' * (4 - missing_padding)

    try:
        raw = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError(f'{field} is not valid base64')

    if len(raw) > max_bytes:
        raise ValidationError(f'{field} exceeds the maximum image size')
    return raw


def _parse_source(data: dict, url_field: str, inline_field: str, max_bytes: int) -> Optional[ImageSource]:
    url = data.get(url_field)
    if url:
        if not isinstance(url, str):
            raise ValidationError(f'{url_field} must be a string')
        return UrlSource(url)

    inline = data.get(inline_field)
    if inline:
        return InlineSource(_decode_base64(inline_field, inline, max_bytes))
    return None


def _parse_padding(value, default: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        return default
    return value


def _parse_flag(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() == 'true'
    return value is True


def parse_overlay_request(data, settings: Settings) -> OverlayRequest:
    """
    Build an OverlayRequest from a JSON body.

    Args:
        data: Decoded JSON body
        settings: Service settings (size limit and default padding)

    Returns:
        OverlayRequest

    Raises:
        ValidationError: body is not an object, a source is missing,
            or the explicit coordinates are malformed
    """
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')

    image = _parse_source(data, 'imageUrl', 'imageBase64', settings.max_image_bytes)
    logo = _parse_source(data, 'logoUrl', 'logoBase64', settings.max_image_bytes)

    missing = [name for name, source in (('imageUrl', image), ('logoUrl', logo)) if source is None]
    if missing:
        verb = 'is' if len(missing) == 1 else 'are'
        raise ValidationError(f"{' and '.join(missing)} {verb} required")

    padding = _parse_padding(data.get('padding'), settings.logo_padding)
    placement = build_placement(data.get('position'), data.get('x'), data.get('y'), padding)

    return OverlayRequest(
        image=image,
        logo=logo,
        logo_width=parse_logo_width(data.get('logoWidth')),
        placement=placement,
        add_shadow=_parse_flag(data.get('addShadow')),
    )


# ---------- Pipeline ----------

class OverlayService:
    """Runs validate -> fetch -> layout -> composite for one request."""

    def __init__(self, validator: UrlValidator, fetcher: SecureFetcher, shadow_offset: int = 10):
        self.validator = validator
        self.fetcher = fetcher
        self.shadow_offset = shadow_offset

    def load(self, source: ImageSource, error_cls: Type[DecodeError],
             cancel: Optional[CancelToken] = None) -> ImageAsset:
        if isinstance(source, InlineSource):
            data = source.data
        else:
            data = self.fetcher.fetch(self.validator.validate(source.url), cancel=cancel)
        return load_asset(data, error_cls)

    def render(self, overlay: OverlayRequest) -> bytes:
        # The two images are independent; fetch them side by side and stop at the first failure
        cancel = CancelToken()
        pool = ThreadPoolExecutor(max_workers=2)
        try:
            base_future = pool.submit(self.load, overlay.image, InvalidBaseImage, cancel)
            logo_future = pool.submit(self.load, overlay.logo, InvalidLogoImage, cancel)
            wait([base_future, logo_future], return_when=FIRST_EXCEPTION)
            for future in (base_future, logo_future):
                if future.done() and future.exception() is not None:
                    # Cut the other transfer instead of leaving it to run out its budget
                    cancel.cancel()
                    raise future.exception()
            base = base_future.result()
            logo = logo_future.result()
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        geometry = resolve(base.width, base.height, logo.width, logo.height,
                           overlay.logo_width, overlay.placement)
        return overlay_logo_on_image(base, logo, geometry, overlay.add_shadow, self.shadow_offset)


# ---------- HTTP ----------

def create_app(settings: Optional[Settings] = None,
               validator: Optional[UrlValidator] = None,
               fetcher: Optional[SecureFetcher] = None,
               limiter: Optional[FixedWindowRateLimiter] = None) -> Flask:
    """Build the Flask application. Collaborators default to ones built from settings."""
    settings = settings or Settings.from_env()
    validator = validator or UrlValidator(settings.allowed_hosts)
    fetcher = fetcher or SecureFetcher(max_bytes=settings.max_image_bytes, timeout=settings.fetch_timeout)
    limiter = limiter or FixedWindowRateLimiter(limit=settings.rate_limit_max, window=settings.rate_limit_window)
    service = OverlayService(validator, fetcher, settings.shadow_offset)

    if not settings.allowed_hosts:
        logger.warning("ALLOWED_HOSTS is empty: every image URL will be rejected")

    app = Flask(__name__)
    app.config['MAX_CONTENT_LENGTH'] = settings.max_body_bytes
    app.extensions['overlay_service'] = service
    app.extensions['rate_limiter'] = limiter

    if settings.trust_proxy:
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1)

    @app.after_request
    def after_request(response):
        response.headers.add('Access-Control-Allow-Origin', '*')
        response.headers.add('Access-Control-Allow-Headers', 'Content-Type,Authorization')
        response.headers.add('Access-Control-Allow-Methods', 'GET,POST,OPTIONS')
        return response

    @app.before_request
    def enforce_rate_limit():
        if request.endpoint != 'overlay' or request.method != 'POST':
            return None
        client_ip = request.remote_addr or 'unknown'
        result = limiter.hit(client_ip)
        if result.allowed:
            return None
        logger.warning("Rate limit exceeded for %s (%d requests per %ss)",
                       client_ip, result.limit, limiter.window)
        response = jsonify({'error': 'Too many requests'})
        response.status_code = 429
        response.headers['Retry-After'] = str(max(1, math.ceil(result.reset_after)))
        return response

    @app.errorhandler(HTTPException)
    def http_error(e):
        if e.code == 413:
            return jsonify({'error': 'Request body too large'}), 413
        return jsonify({'error': e.name}), e.code

    @app.route('/', methods=['GET'])
    def index():
        return jsonify({'status': 'Image Overlay Service Running'})

    @app.route('/health', methods=['GET'])
    def health():
        return jsonify({
            'status': 'healthy',
            'service': 'image-overlay',
            'limits': {
                'max_image_bytes': settings.max_image_bytes,
                'fetch_timeout': settings.fetch_timeout,
                'rate_limit': {
                    'requests': settings.rate_limit_max,
                    'window_seconds': settings.rate_limit_window,
                },
            },
            'defaults': {
                'position': DEFAULT_POSITION,
                'logo_width': DEFAULT_LOGO_WIDTH,
                'padding': settings.logo_padding,
            },
        })

    @app.route('/overlay', methods=['POST', 'OPTIONS'])
    def overlay():
        """Overlay a logo onto a base image and return the PNG."""
        if request.method == 'OPTIONS':
            return '', 200

        client_ip = request.remote_addr or 'unknown'
        try:
            overlay_request = parse_overlay_request(request.get_json(silent=True), settings)
        except ValidationError as e:
            logger.info("Rejected overlay request from %s: %s", client_ip, e.detail)
            return jsonify({'error': e.detail}), 400

        logger.info("Overlay request from %s: placement=%s width=%s shadow=%s",
                    client_ip, overlay_request.placement, overlay_request.logo_width,
                    overlay_request.add_shadow)

        try:
            result_bytes = service.render(overlay_request)
        except ValidationError as e:
            return jsonify({'error': e.detail}), 400
        except SecurityError as e:
            logger.warning("Blocked image URL from %s (possible SSRF attempt): %s: %s",
                           client_ip, type(e).__name__, e.detail)
            return jsonify({'error': GENERIC_ERROR}), 500
        except OverlayError as e:
            logger.error("Overlay failed for %s: %s: %s", client_ip, type(e).__name__, e.detail)
            return jsonify({'error': GENERIC_ERROR}), 500
        except Exception:
            logger.exception("Unexpected error while processing overlay for %s", client_ip)
            return jsonify({'error': GENERIC_ERROR}), 500

        # Return the composited image
        buffer = BytesIO(result_bytes)
        buffer.seek(0)
        return send_file(buffer, mimetype='image/png')

    return app


settings = Settings.from_env()
configure_logging(settings.log_level)
app = create_app(settings)


if __name__ == '__main__':
    app.run(host=settings.host, port=settings.port)
