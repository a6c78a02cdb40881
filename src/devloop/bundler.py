"""Bundler detection and build directory preparation."""

from __future__ import annotations

from pathlib import Path
import shutil
from typing import TYPE_CHECKING, get_args

from devloop.config import BundlerKind
from devloop.exceptions import BundlerConfigError
from devloop.log import get_logger


if TYPE_CHECKING:
    from devloop.config import Directories


logger = get_logger(__name__)

BUNDLERS: tuple[BundlerKind, ...] = get_args(BundlerKind)


def _has_config(cwd: Path, bundler: str) -> bool:
    return any((cwd / f"{bundler}.config.{ext}").exists() for ext in ("js", "ts"))


def _check_deprecated_dir(cwd: Path, bundler: str) -> None:
    if (cwd / bundler).is_dir():
        msg = (
            f"Build configuration should be placed in a single {bundler}.config.js file, "
            f"not in a {bundler}/ directory"
        )
        raise BundlerConfigError(msg)


def validate_bundler(bundler: str | None, cwd: str | Path = ".") -> BundlerKind:
    """Return the bundler to use, detecting it from config files if not given.

    Raises:
        BundlerConfigError: If the bundler is unknown or no config file exists
    """
    root = Path(cwd)
    if not bundler:
        detected = next((b for b in BUNDLERS if _has_config(root, b)), None)
        if detected is None:
            for name in BUNDLERS:
                _check_deprecated_dir(root, name)
            msg = "Could not find a configuration file for rollup or webpack"
            raise BundlerConfigError(msg)
        logger.debug("Detected bundler", bundler=detected, cwd=str(root))
        return detected
    if bundler not in BUNDLERS:
        msg = f"{bundler!r} is not a valid bundler, must be either 'rollup' or 'webpack'"
        raise BundlerConfigError(msg)
    return bundler  # type: ignore[return-value]


def reset_dir(path: Path) -> None:
    """Remove a directory tree (or file) if present and recreate it empty."""
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    elif path.exists() or path.is_symlink():
        path.unlink()
    path.mkdir(parents=True, exist_ok=True)


def prepare_directories(dirs: Directories) -> None:
    """Clear the generated-output and build directories."""
    reset_dir(dirs.output)
    reset_dir(dirs.dest)
    (dirs.dest / "client").mkdir(parents=True, exist_ok=True)
    logger.debug("Prepared directories", output=str(dirs.output), dest=str(dirs.dest))
