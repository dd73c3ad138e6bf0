"""Development server: ``python -m autopilot``."""

import uvicorn

from autopilot.core.config import settings


def main() -> None:
    uvicorn.run(
        "autopilot.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.is_development,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
