"""ASGI entry point: ``uvicorn nexaflow.main:app``."""

from nexaflow.config import load_config
from nexaflow.factory import create_app

config = load_config()
app = create_app(config)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, **config.get_uvicorn_config())
