import logging
import os
from pathlib import Path

from src.rules.models import Rules

logger = logging.getLogger(__name__)


def validate_ops_rules(rules: Rules, data_dir: Path) -> None:
    """
    Validate operational requirements before startup.

    Raises RuntimeError when the environment cannot run the service.
    """
    ops = rules.ops

    # 1. Data dir holds the SQLite database
    if ops.data_dir_required:
        data_dir.mkdir(parents=True, exist_ok=True)
        if not os.access(data_dir, os.W_OK):
            raise RuntimeError(f"Data directory is not writable: {data_dir}")

    # 2. Required env
    missing = [env_var for env_var in ops.required_env if env_var not in os.environ]
    if missing:
        raise RuntimeError(f"Missing required environment variables: {', '.join(missing)}")

    logger.info("Configuration validated (data_dir=%s)", data_dir)
