from __future__ import annotations

import uvicorn

from .config import settings
from .logging_setup import setup_logging


def main() -> None:
    setup_logging(settings.log_level, settings.log_file)
    uvicorn.run("worktime.main:app", host=settings.host, port=settings.port, reload=False, log_config=None)


if __name__ == "__main__":
    main()
