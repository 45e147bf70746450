"""HTTP Request node handler."""

import asyncio
import json
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from crm_automation.core.config import Settings
from crm_automation.core.logging import get_logger
from crm_automation.services.context import ExecutionContext
from .common import node_failure, node_success

logger = get_logger(__name__)

BODY_METHODS = ('POST', 'PUT', 'PATCH', 'DELETE')


def _parse_headers(raw: Any) -> Dict[str, str]:
    if isinstance(raw, dict):
        return {str(k): str(v) for k, v in raw.items()}
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        return {}
    return {str(k): str(v) for k, v in parsed.items()} if isinstance(parsed, dict) else {}


def _body_kwargs(body: Any) -> Dict[str, Any]:
    if body is None or body == '':
        return {}
    if isinstance(body, (dict, list)):
        return {'json': body}
    try:
        return {'json': json.loads(body)}
    except (TypeError, json.JSONDecodeError):
        return {'content': str(body)}


async def handle_http_request(
    node_id: str,
    node_type: str,
    parameters: Dict[str, Any],
    context: ExecutionContext,
    http_client: httpx.AsyncClient,
    settings: Settings,
    backoff_sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
) -> Dict[str, Any]:
    """Make an outbound HTTP call with timeout and bounded retries.

    Each attempt is cancelled after ``timeout`` seconds (default 30). Timeouts,
    transport errors and 5xx answers are retried up to ``retries`` times with
    2^attempt seconds between attempts; a 4xx answer fails immediately. The
    response is stored as http_response and, when set, under ``storeAs``.
    """
    start_time = time.time()
    url = parameters.get('url') or ''
    method = str(parameters.get('method') or 'GET').upper()

    if not url:
        return node_failure(node_id, node_type, start_time, "URL is required")

    try:
        timeout = float(parameters.get('timeout') or settings.http_timeout_seconds)
        retries = min(max(int(parameters.get('retries') or 0), 0), settings.http_max_retries)
    except (TypeError, ValueError) as e:
        return node_failure(node_id, node_type, start_time, f"Invalid timeout/retries: {e}")

    request_kwargs: Dict[str, Any] = {'headers': _parse_headers(parameters.get('headers'))}
    if method in BODY_METHODS:
        request_kwargs.update(_body_kwargs(parameters.get('body')))

    last_error: Optional[str] = None
    for attempt in range(retries + 1):
        if attempt:
            delay = 2 ** attempt
            logger.info("[HTTP Request] Retrying", node_id=node_id, attempt=attempt, delay=delay)
            await backoff_sleep(delay)

        try:
            response = await asyncio.wait_for(
                http_client.request(method, url, **request_kwargs), timeout=timeout
            )
        except asyncio.TimeoutError:
            last_error = f"Request timed out after {timeout:g} seconds"
            logger.warning("HTTP request timed out", node_id=node_id, url=url, attempt=attempt)
            continue
        except httpx.HTTPError as e:
            last_error = f"{type(e).__name__}: {e}"
            logger.warning("HTTP request error", node_id=node_id, url=url, attempt=attempt, error=str(e))
            continue

        try:
            response_data = response.json()
        except ValueError:
            response_data = response.text

        result_data = {
            "status": response.status_code,
            "data": response_data,
            "headers": dict(response.headers),
            "url": str(response.url),
            "method": method,
            "attempts": attempt + 1,
        }

        if response.is_success:
            context.set('http_response', {"status": response.status_code, "data": response_data})
            if parameters.get('storeAs'):
                context.set(str(parameters['storeAs']), response_data)
            logger.info("[HTTP Request] Completed", node_id=node_id, method=method, url=url,
                        status=response.status_code)
            return node_success(node_id, node_type, start_time, result_data)

        last_error = f"HTTP {response.status_code}"
        if response.status_code < 500:
            break

    logger.error("HTTP request failed", node_id=node_id, url=url, error=last_error)
    return node_failure(node_id, node_type, start_time, last_error or "HTTP request failed")
