import json
import logging
from dataclasses import asdict, dataclass, fields
from pathlib import Path

logger = logging.getLogger(__name__)

APP_DIR = Path.home() / ".nsview"
CFG_PATH = APP_DIR / "config.json"


@dataclass(slots=True)
class AppConfig:
    refresh_interval: float = 5.0  # seconds
    expand_policy: str = "roots"  # "roots" or "all"
    show_system_processes: bool = False
    mount_expand_limit: int = 50
    snapshot_path: str = ""  # "" = discover the local host


def load_config(path: Path = CFG_PATH) -> AppConfig:
    """Load the configuration, writing the defaults if there is none yet."""
    if not path.exists():
        cfg = AppConfig()
        save_config(cfg, path)
        return cfg
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        known = {f.name for f in fields(AppConfig)}
        return AppConfig(**{k: v for k, v in data.items() if k in known})
    except (OSError, ValueError, TypeError, AttributeError) as exc:
        logger.warning("unusable config file %s, using defaults: %s", path, exc)
        cfg = AppConfig()
        save_config(cfg, path)
        return cfg


def save_config(cfg: AppConfig, path: Path = CFG_PATH) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(asdict(cfg), indent=2), encoding="utf-8")
