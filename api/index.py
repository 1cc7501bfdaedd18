# Vercel entrypoint: the runtime looks for a top-level ASGI variable named exactly `app`
from main import app  # noqa: F401
