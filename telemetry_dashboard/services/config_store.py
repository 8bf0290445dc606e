"""Loading of the points configuration file."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict

from pydantic import ValidationError

from telemetry_dashboard.config import PointConfig, PointsFile
from telemetry_dashboard.errors import ConfigError

logger = logging.getLogger(__name__)


class PointsFileStore:
    """Reads point definitions from a JSON file (``points`` or legacy ``endPoints``)."""

    def __init__(self, path: Path):
        self.path = path

    def load(self) -> Dict[str, PointConfig]:
        if not self.path.exists():
            logger.warning("Points file %s not found; starting with no points", self.path)
            return {}
        try:
            payload = json.loads(self.path.read_text())
        except json.JSONDecodeError as exc:
            raise ConfigError(f"{self.path} is not valid JSON: {exc}") from exc
        return parse_points(payload)


def parse_points(payload: Any) -> Dict[str, PointConfig]:
    try:
        return PointsFile.model_validate(payload).points
    except ValidationError as exc:
        raise ConfigError(str(exc)) from exc
