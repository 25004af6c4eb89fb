"""
Generate and save run metadata for snaploop runs.

This module captures the environment a run happened in: host identity,
hardware specs, software versions, and the run's configuration. It is
written next to the run log so a retained clone can be matched to the
machine and settings that produced it.
"""

import json
import os
import platform
import shutil
import subprocess
import sys
import uuid
from pathlib import Path
from typing import Any

import psutil

METADATA_FILE = "run_metadata.json"


def get_git_info() -> dict[str, str | bool]:
    """Get git commit hash and dirty status for the snaploop checkout."""
    try:
        package_dir = Path(__file__).parent.parent

        result = subprocess.run(
            ["git", "rev-parse", "HEAD"],
            cwd=package_dir,
            capture_output=True,
            text=True,
            timeout=5,
        )
        commit_hash = result.stdout.strip() if result.returncode == 0 else "unknown"

        result = subprocess.run(
            ["git", "status", "--porcelain"],
            cwd=package_dir,
            capture_output=True,
            text=True,
            timeout=5,
        )
        is_dirty = bool(result.stdout.strip()) if result.returncode == 0 else False

        return {"commit": commit_hash, "dirty": is_dirty}
    except (subprocess.TimeoutExpired, FileNotFoundError, OSError):
        return {"commit": "unknown", "dirty": False}


def get_hardware_info(output_dir: Path) -> dict[str, Any]:
    """Describe the CPUs, memory, and free disk of this host."""
    try:
        load_1min: float | None = psutil.getloadavg()[0]
    except (OSError, AttributeError):
        load_1min = None
    return {
        "cpu_count_logical": psutil.cpu_count(logical=True),
        "cpu_count_physical": psutil.cpu_count(logical=False),
        "total_ram_gb": round(psutil.virtual_memory().total / (1024**3), 2),
        "disk_free_gb": round(shutil.disk_usage(output_dir).free / (1024**3), 2),
        "system_load_1min": load_1min,
    }


def generate_run_metadata(output_dir: Path, configuration: dict[str, Any]) -> dict[str, Any]:
    """
    Generate run metadata and save it to ``output_dir/run_metadata.json``.

    Args:
        output_dir: Directory where the metadata file is saved.
        configuration: The run's settings, stored verbatim.

    Returns:
        Dictionary containing all collected metadata.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    metadata_path = output_dir / METADATA_FILE

    metadata = {
        "run_id": str(uuid.uuid4()),
        "environment": {
            "hostname": platform.node(),
            "os": platform.platform(),
            "pid": os.getpid(),
            "python_version": sys.version,
            "snaploop_version": get_git_info(),
        },
        "hardware": get_hardware_info(output_dir),
        "configuration": configuration,
    }

    try:
        with open(metadata_path, "w", encoding="utf-8") as f:
            json.dump(metadata, f, indent=2, default=str)
    except OSError as e:
        print(f"[!] Warning: Could not save run metadata: {e}", file=sys.stderr)

    return metadata
