"""
ASGI entry point.

Used by uvicorn / gunicorn:
    uvicorn server.asgi:app --app-dir backend

Or directly:
    python -m server.asgi
"""

from dotenv import load_dotenv

load_dotenv()

import uvicorn  # pylint: disable=wrong-import-position

from config import AppConfig  # pylint: disable=wrong-import-position
from server.app import create_app  # pylint: disable=wrong-import-position

config = AppConfig.load_from_env()
app = create_app(config)


if __name__ == "__main__":
    uvicorn.run(app, host=config.host, port=config.port, log_level=config.log_level.lower())
