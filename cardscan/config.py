"""Scan configuration defaults and loading."""

import copy
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

# Hard cap on catalog results per search
MAX_SEARCH_LIMIT = 20

DEFAULT_CONFIG: Dict[str, Any] = {
    # Scheduling
    "interval": 0.4,
    "cooldown": 1.2,
    # Capture
    "camera_index": 0,
    "camera_width": 1280,
    "camera_height": 720,
    "frame_width": 720,
    "roi": {"top": 0.0, "left": 0.0, "width": 1.0, "height": 0.18},
    # OCR
    "gpu": None,
    "min_confidence": 0.2,
    "min_name_length": 3,
    "min_full_frame_line": 4,
    # Catalog
    "search_limit": 12,
    "fetch_details": True,
    "condition": "NM",
    "printing": None,
    # Text ranking
    "max_ranked": 8,
    "distance_threshold": 0.36,
    "name_weight": 0.75,
    "set_weight": 0.15,
    "number_weight": 0.10,
    "number_bonus": 0.25,
    # Visual matching
    "visual_enabled": True,
    "feature_scale": 0.75,
    "orb_features": 500,
    "ratio_test": 0.75,
    "good_match_norm": 120,
    "fetch_timeout": 5.0,
    "fetch_workers": 4,
    "descriptor_cache_size": 64,
    # Fusion
    "text_weight": 0.75,
    "image_weight": 0.25,
}


def load_config(path: Optional[Path] = None, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Build a scan config from defaults, an optional JSON file and overrides.

    The JSON file may hold the settings at the top level or under a "scan"
    key. Override values of None are ignored so argparse defaults can be
    passed straight through.

    Raises:
        ValueError: If the file exists but is not valid JSON
    """
    config = copy.deepcopy(DEFAULT_CONFIG)

    if path is not None:
        path = Path(path).expanduser()
        if path.exists():
            try:
                with open(path, 'r') as f:
                    data = json.load(f) or {}
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid config file {path}: {e}") from e
            if isinstance(data.get("scan"), dict):
                data = data["scan"]
            unknown = set(data) - set(DEFAULT_CONFIG)
            if unknown:
                logger.warning(f"Ignoring unknown config keys: {', '.join(sorted(unknown))}")
            config.update({k: v for k, v in data.items() if k in DEFAULT_CONFIG})
        else:
            logger.warning(f"Config file not found: {path}, using defaults")

    if overrides:
        config.update({k: v for k, v in overrides.items() if v is not None})

    config["search_limit"] = max(1, min(int(config["search_limit"]), MAX_SEARCH_LIMIT))
    return config
