"""HTTP node handler - outbound HTTP requests with httpx."""

import base64
import json
import time
from typing import Any, Callable, Dict, List, Optional, Union
from urllib.parse import urlparse

import httpx

from constants import HTTP_REQUEST
from core.logging import get_logger
from services.execution.errors import NodeErrorCode, classify_http_status
from services.execution.types import (
    HandlerMetadata, NodeExecutionContext, NodeExecutionResult, ResultMetadata, failure_result,
)

logger = get_logger(__name__)

DEFAULT_TIMEOUT_MS = 30000
BODY_METHODS = ('POST', 'PUT', 'PATCH', 'DELETE')
METHODS = ('GET', 'POST', 'PUT', 'PATCH', 'DELETE', 'HEAD', 'OPTIONS')

ClientFactory = Callable[..., httpx.AsyncClient]
_client_factory: ClientFactory = httpx.AsyncClient
_default_timeout_ms = DEFAULT_TIMEOUT_MS


def set_client_factory(factory: Optional[ClientFactory]) -> None:
    """Swap the client constructor (tests pass a MockTransport-backed one)."""
    global _client_factory
    _client_factory = factory or httpx.AsyncClient


def configure_default_timeout(timeout_ms: int) -> None:
    global _default_timeout_ms
    _default_timeout_ms = timeout_ms


def build_headers(headers: Dict[str, Any], auth: Optional[Dict[str, Any]]) -> Dict[str, str]:
    result = {str(k): str(v) for k, v in (headers or {}).items()}
    if not auth:
        return result

    auth_type = auth.get('type')
    if auth_type == 'basic':
        token = base64.b64encode(
            f"{auth.get('username', '')}:{auth.get('password', '')}".encode('utf-8')).decode('ascii')
        result['Authorization'] = f"Basic {token}"
    elif auth_type == 'bearer' and auth.get('token'):
        result['Authorization'] = f"Bearer {auth['token']}"
    elif auth_type == 'api_key' and auth.get('apiKey'):
        result[auth.get('headerName') or 'X-API-Key'] = str(auth['apiKey'])
    return result


def build_body(body: Any, body_type: str) -> Dict[str, Any]:
    """httpx request kwargs for the configured body type."""
    if body is None:
        return {}
    if body_type == 'json':
        return {"json": body}
    if body_type == 'form':
        if isinstance(body, dict):
            return {"data": {k: str(v) for k, v in body.items()}}
        return {"content": str(body)}
    if isinstance(body, (dict, list)):
        return {"content": json.dumps(body)}
    return {"content": str(body)}


def parse_response(response: httpx.Response) -> Any:
    content_type = response.headers.get('content-type', '')
    if 'application/json' in content_type:
        try:
            return response.json()
        except ValueError:
            return response.text
    return response.text


def status_is_valid(status: int, validate_status: Union[str, List[int], None]) -> bool:
    if validate_status == 'all':
        return True
    if isinstance(validate_status, list) and status in validate_status:
        return True
    return 200 <= status < 300


async def handle_http_request(context: NodeExecutionContext) -> NodeExecutionResult:
    """Make an HTTP request and return ``{status, statusText, headers, data, ok, url}``.

    Timeouts and connection errors are retryable. Rejected statuses are
    classified by ``classify_http_status`` (429 and 5xx retryable).
    """
    start_time = time.time()
    config = context.resolved_config

    url = config.get('url')
    method = str(config.get('method') or 'GET').upper()
    if not url:
        await context.log('error', 'URL is required')
        return failure_result(NodeErrorCode.MISSING_CONFIG, 'URL is required for HTTP request')

    parsed = urlparse(str(url))
    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        await context.log('error', 'Invalid URL format', {"url": url})
        return failure_result(NodeErrorCode.INVALID_CONFIG, f"Invalid URL format: {url}")

    if method not in METHODS:
        return failure_result(NodeErrorCode.INVALID_OPERATION, f"Unsupported HTTP method: {method}")

    try:
        timeout_ms = int(config.get('timeout') or _default_timeout_ms)
    except (TypeError, ValueError):
        timeout_ms = _default_timeout_ms

    for key in ('headers', 'queryParams', 'auth'):
        if config.get(key) and not isinstance(config[key], dict):
            await context.log('error', f"{key} must be an object")
            return failure_result(NodeErrorCode.INVALID_CONFIG, f"{key} must be an object")

    headers = build_headers(config.get('headers') or {}, config.get('auth'))
    body_kwargs = build_body(config.get('body'), config.get('bodyType') or 'json') \
        if method in BODY_METHODS else {}
    params = {k: v for k, v in (config.get('queryParams') or {}).items() if v is not None}

    await context.log('info', f"{method} {url}", {
        "hasBody": bool(body_kwargs),
        "hasAuth": bool(config.get('auth') and config['auth'].get('type') not in (None, 'none')),
    })

    try:
        async with _client_factory(timeout=timeout_ms / 1000,
                                   follow_redirects=config.get('followRedirects') is not False) as client:
            response = await client.request(method, str(url), headers=headers,
                                            params=params or None, **body_kwargs)
    except httpx.TimeoutException:
        await context.log('error', f"Request timeout after {timeout_ms}ms")
        return failure_result(NodeErrorCode.TIMEOUT,
                              f"HTTP request timeout after {timeout_ms}ms", retryable=True)
    except httpx.ConnectError as e:
        await context.log('error', 'Connection failed', {"error": str(e)})
        return failure_result(NodeErrorCode.CONNECTION_FAILED,
                              f"Failed to connect: {e}", retryable=True)
    except httpx.HTTPError as e:
        await context.log('error', 'HTTP request failed', {"error": str(e)})
        return failure_result(NodeErrorCode.OPERATION_FAILED,
                              f"HTTP request failed: {e}", retryable=True)

    data = parse_response(response)
    valid = status_is_valid(response.status_code, config.get('validateStatus'))

    await context.log('info' if valid else 'warn',
                      f"Response: {response.status_code} {response.reason_phrase}",
                      {"status": response.status_code,
                       "contentType": response.headers.get('content-type')})

    if not valid:
        code, retryable = classify_http_status(response.status_code)
        return failure_result(
            code,
            f"HTTP request failed with status {response.status_code}: {response.reason_phrase}",
            retryable=retryable,
        )

    output = {
        "status": response.status_code,
        "statusText": response.reason_phrase,
        "headers": dict(response.headers),
        "data": data,
        "ok": response.is_success,
        "url": str(response.url),
    }
    return NodeExecutionResult(
        success=True,
        data=output,
        metadata=ResultMetadata(duration_ms=int((time.time() - start_time) * 1000),
                                bytes_processed=len(response.content)),
    )


HTTP_HANDLERS = [
    (HandlerMetadata(type=HTTP_REQUEST, name='HTTP Request',
                     description='Makes HTTP requests to external APIs', category='integration'),
     handle_http_request),
]
