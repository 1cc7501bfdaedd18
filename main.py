import os
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, List, Mapping

import httpx
from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, model_validator
from starlette.exceptions import HTTPException as StarletteHTTPException

from handler import UpstreamError, generate_content

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)-12s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("chat_relay")

# --- Configuration defaults (overridable via Vercel env vars)
DEFAULT_KEY_PREFIX = "GEMINI_API_KEY"
DEFAULT_KEY_COUNT = 4
DEFAULT_MODEL = "gemini-2.5-flash"
DEFAULT_API_BASE = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_TEMPERATURE = 0.9
DEFAULT_MAX_OUTPUT_TOKENS = 2048
DEFAULT_TIMEOUT = 30.0

# keys rotate every 6 hours, counted from this instant
ROTATION_EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)
ROTATION_INTERVAL = timedelta(hours=6)

USER_ROLE = "user"
MODEL_ROLE = "model"
FALLBACK_TEXT = "Sorry, I couldn't come up with a response. Please try again."
MISSING_KEY_MESSAGE = "API Key is missing or invalid."

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


class KeyPool(BaseModel):
    """Ordered key slots; slot ``i`` is read from ``<prefix><i + 1>``. ``None`` marks an unset slot."""

    model_config = ConfigDict(frozen=True)

    slots: tuple[str | None, ...]
    prefix: str = DEFAULT_KEY_PREFIX
    epoch: datetime = ROTATION_EPOCH
    interval: timedelta = ROTATION_INTERVAL

    @property
    def size(self) -> int:
        return len(self.slots)


class GenerationSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    temperature: float = DEFAULT_TEMPERATURE
    max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    key_pool: KeyPool
    model: str = DEFAULT_MODEL
    api_base: str = DEFAULT_API_BASE
    generation: GenerationSettings = GenerationSettings()
    timeout: float = DEFAULT_TIMEOUT

    @property
    def endpoint(self) -> str:
        return f"{self.api_base.rstrip('/')}/models/{self.model}:generateContent"


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    env = os.environ if environ is None else environ
    prefix = env.get("GEMINI_KEY_PREFIX") or DEFAULT_KEY_PREFIX
    count = int(env.get("GEMINI_KEY_COUNT") or DEFAULT_KEY_COUNT)
    if count < 1:
        raise ValueError("GEMINI_KEY_COUNT must be at least 1")
    # blank values count as unset
    slots = tuple((env.get(f"{prefix}{i}") or "").strip() or None for i in range(1, count + 1))
    return Settings(
        key_pool=KeyPool(slots=slots, prefix=prefix),
        model=env.get("GEMINI_MODEL") or DEFAULT_MODEL,
        api_base=env.get("GEMINI_API_BASE") or DEFAULT_API_BASE,
        generation=GenerationSettings(
            temperature=float(env.get("GEMINI_TEMPERATURE") or DEFAULT_TEMPERATURE),
            max_output_tokens=int(env.get("GEMINI_MAX_OUTPUT_TOKENS") or DEFAULT_MAX_OUTPUT_TOKENS),
        ),
        timeout=float(env.get("UPSTREAM_TIMEOUT") or DEFAULT_TIMEOUT),
    )


# --- Pydantic models
class ChatTurn(BaseModel):
    role: str = USER_ROLE
    content: str | None = None


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str
    system_prompt: str | None = Field(default=None, alias="systemPrompt")
    history: List[ChatTurn] | None = None
    # set only when the body arrived in the legacy shape; that front-end reads {response}
    legacy_shape: bool = Field(default=False, exclude=True)

    @model_validator(mode="before")
    @classmethod
    def _accept_legacy_shape(cls, data: Any) -> Any:
        # older front-ends post {user_message, character_config: {system_prompt}}
        if isinstance(data, dict) and "message" not in data and "user_message" in data:
            character = data.get("character_config")
            return {
                "message": data["user_message"],
                "systemPrompt": character.get("system_prompt") if isinstance(character, dict) else None,
                "history": data.get("history"),
                "legacy_shape": True,
            }
        if isinstance(data, dict) and "legacy_shape" in data:
            data = {k: v for k, v in data.items() if k != "legacy_shape"}
        return data


class ChatResponse(BaseModel):
    text: str


class LegacyChatResponse(BaseModel):
    response: str


# --- Key rotation
class MissingApiKeyError(LookupError):
    def __init__(self, key_name: str):
        super().__init__(f"API key '{key_name}' not found")
        self.key_name = key_name


def rotation_index(now: datetime, pool: KeyPool) -> int:
    """Zero-based slot for ``now``; constant within an interval, cycles with period ``pool.size``."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    interval_number = (now - pool.epoch) // pool.interval
    return interval_number % pool.size


def select_key(now: datetime, pool: KeyPool) -> str:
    """Return the key configured for the slot active at ``now``.

    Raises :class:`MissingApiKeyError` when that slot is unset. Other slots are
    never tried: every instance must agree on the key for a given instant.
    """
    index = rotation_index(now, pool)
    key_name = f"{pool.prefix}{index + 1}"
    key = pool.slots[index]
    if not key:
        logger.error("API Key '%s' not found.", key_name)
        raise MissingApiKeyError(key_name)
    logger.info("Using API key slot %d (%s)", index + 1, key_name)
    return key


# --- Payload translation
def _content(role: str, text: str) -> dict:
    return {"role": role, "parts": [{"text": text}]}


def build_external_payload(req: ChatRequest, generation: GenerationSettings) -> dict:
    contents = []
    for turn in req.history or []:
        role = USER_ROLE if turn.role.strip().lower() == USER_ROLE else MODEL_ROLE
        contents.append(_content(role, turn.content or ""))
    contents.append(_content(USER_ROLE, req.message))

    payload = {}
    if req.system_prompt and req.system_prompt.strip():
        payload["systemInstruction"] = {"parts": [{"text": req.system_prompt}]}
    payload["contents"] = contents
    payload["generationConfig"] = {
        "temperature": generation.temperature,
        "maxOutputTokens": generation.max_output_tokens,
    }
    return payload


def extract_text(data: Any) -> str:
    try:
        text = data["candidates"][0]["content"]["parts"][0]["text"]
    except (KeyError, IndexError, TypeError):
        return FALLBACK_TEXT
    if not isinstance(text, str) or not text:
        return FALLBACK_TEXT
    return text


# --- Dependencies (overridden in tests)
def get_settings() -> Settings:
    return load_settings()


def get_now() -> datetime:
    return datetime.now(timezone.utc)


async def get_http_client(settings: Settings = Depends(get_settings)):
    async with httpx.AsyncClient(timeout=settings.timeout) as client:
        yield client


app = FastAPI(title="Gemini chat relay")


@app.middleware("http")
async def add_cors_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.update(CORS_HEADERS)
    return response


# --- Error shaping: every failure is {"error": "..."}
@app.exception_handler(StarletteHTTPException)
async def http_error(request: Request, exc: StarletteHTTPException):
    headers = dict(exc.headers or {})
    if exc.status_code == 405:
        # one path, two routes: Starlette only names the route it matched first
        headers["Allow"] = CORS_HEADERS["Access-Control-Allow-Methods"]
    return JSONResponse({"error": str(exc.detail)}, status_code=exc.status_code, headers=headers)


@app.exception_handler(RequestValidationError)
async def validation_error(request: Request, exc: RequestValidationError):
    problems = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        problems.append(f"{loc}: {err['msg']}" if loc else err["msg"])
    return JSONResponse({"error": "Invalid request: " + "; ".join(problems)}, status_code=400)


@app.exception_handler(Exception)
async def unexpected_error(request: Request, exc: Exception):
    logger.exception("Request handling error")
    return JSONResponse({"error": str(exc) or "An unknown error occurred."}, status_code=500, headers=CORS_HEADERS)


# --- Endpoints
@app.options("/api/chat")
async def api_chat_preflight():
    return Response(status_code=204)


@app.post("/api/chat")
async def api_chat(
    req: ChatRequest,
    settings: Settings = Depends(get_settings),
    now: datetime = Depends(get_now),
    client: httpx.AsyncClient = Depends(get_http_client),
):
    if not req.message.strip():
        raise HTTPException(status_code=400, detail="message required")

    try:
        api_key = select_key(now, settings.key_pool)
    except MissingApiKeyError:
        raise HTTPException(status_code=500, detail=MISSING_KEY_MESSAGE)

    payload = build_external_payload(req, settings.generation)
    try:
        data = await generate_content(client, settings.endpoint, api_key, payload)
    except UpstreamError as e:
        raise HTTPException(status_code=500, detail=str(e))

    text = extract_text(data)
    if req.legacy_shape:
        return LegacyChatResponse(response=text)
    return ChatResponse(text=text)
