from __future__ import annotations

import uvicorn

from telemetry_dashboard.config import get_settings


def main() -> None:  # pragma: no cover
    settings = get_settings()
    uvicorn.run("telemetry_dashboard.main:app", host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":  # pragma: no cover
    main()
