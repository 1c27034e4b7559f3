from __future__ import annotations

from xlama.logging.logger import init_logging

init_logging()

import uvicorn

from xlama.configuration.config import settings

if __name__ == "__main__":
    uvicorn.run(
        "xlama.api.app:create_app",
        factory=True,
        host=settings.API_HOST,
        port=settings.API_PORT,
    )
