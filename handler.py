# handler.py
import logging

import httpx

logger = logging.getLogger("chat_relay")


class UpstreamError(Exception):
    """The generative API answered with a non-2xx status or could not be reached."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    def __str__(self):
        if self.status_code is None:
            return f"Google API Error: {self.message}"
        return f"Google API Error ({self.status_code}): {self.message}"


def _error_message(res: httpx.Response) -> str:
    # Google wraps failures as {"error": {"code": ..., "message": ..., "status": ...}}
    fallback = res.reason_phrase or f"HTTP {res.status_code}"
    try:
        data = res.json()
    except ValueError:
        return fallback
    err = data.get("error") if isinstance(data, dict) else None
    if isinstance(err, dict) and err.get("message"):
        return str(err["message"])
    return fallback


async def generate_content(client: httpx.AsyncClient, endpoint: str, api_key: str, payload: dict) -> dict:
    try:
        res = await client.post(
            endpoint,
            params={"key": api_key},
            json=payload,
            headers={"Content-Type": "application/json"},
        )
    except httpx.HTTPError as e:
        logger.error("Upstream request failed: %s", e.__class__.__name__)
        raise UpstreamError(str(e) or e.__class__.__name__) from e

    if not res.is_success:
        message = _error_message(res)
        logger.error("Upstream returned %s: %s", res.status_code, message)
        raise UpstreamError(message, status_code=res.status_code)

    try:
        return res.json()
    except ValueError as e:
        logger.error("Upstream returned a non-JSON body (status %s)", res.status_code)
        raise UpstreamError("invalid JSON in response body", status_code=res.status_code) from e
