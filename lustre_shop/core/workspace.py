"""
Output directory manager for Lustre Shop.

Each fit run writes into its own timestamped directory so that repeated
runs over the same capture never overwrite each other. This module creates
that structure so neither the fitter nor the CLI builds paths by hand.

Workspaces live under ~/LustreShop/fits/ by default. Each one contains:
    artifacts/       fitted textures, basisFunctions.csv, rmse.txt, model.glb
    reconstruction/  basis/, fitted/ and ground_truth/ renders
                     (written only with reconstruct_all)
    settings.json    the settings the run used
"""

import json
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path

from lustre_shop.core.settings import SpecularFitSettings


SETTINGS_FILENAME = "settings.json"


@dataclass
class WorkspacePaths:
    """Named paths of one fit workspace."""
    root: Path            # Top-level workspace directory
    capture: Path         # Capture directory the fit reads from
    artifacts: Path       # Serialized fit and RMSE report
    reconstruction: Path  # Re-rendered views and ground truth
    settings: Path        # Copy of the run settings


def create_workspace(capture_dir: Path, base_dir: Path | None = None,
                     root: Path | None = None) -> WorkspacePaths:
    """
    Create a workspace with all required subdirectories.

    Args:
        capture_dir: capture the fit reads from.
        base_dir:    parent directory for timestamped workspaces. Defaults
                     to ~/LustreShop/fits/.
        root:        use this directory as the workspace instead of a
                     timestamped one under base_dir.

    Returns:
        WorkspacePaths with all directories created on disk.
    """
    if root is None:
        if base_dir is None:
            base_dir = Path.home() / "LustreShop" / "fits"
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        root = Path(base_dir) / f"fit_{timestamp}"
    root = Path(root)

    paths = WorkspacePaths(
        root=root,
        capture=Path(capture_dir),
        artifacts=root / "artifacts",
        reconstruction=root / "reconstruction",
        settings=root / SETTINGS_FILENAME,
    )

    paths.artifacts.mkdir(parents=True, exist_ok=True)
    paths.reconstruction.mkdir(parents=True, exist_ok=True)
    return paths


def write_settings(workspace: WorkspacePaths, settings: SpecularFitSettings) -> Path:
    """Record the run settings next to the artifacts, in load_settings() layout."""
    data = asdict(settings)
    data["texture_size"] = [data.pop("texture_width"), data.pop("texture_height")]
    with open(workspace.settings, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
    return workspace.settings
