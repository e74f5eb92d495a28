"""Entrypoint: run the Grounded Chat server."""

import uvicorn

from grounded_chat.api.app import create_app
from grounded_chat.config.settings import Settings


def main() -> None:
    settings = Settings()
    app = create_app(settings)
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
