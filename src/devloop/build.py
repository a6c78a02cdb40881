"""One-shot production build."""

from __future__ import annotations

from collections.abc import Callable
import json
from pathlib import Path
import shutil
from typing import TYPE_CHECKING, Any

from devloop.bundler import prepare_directories, validate_bundler
from devloop.config import BuildConfig
from devloop.exceptions import BundlerConfigError, TemplateNotFoundError
from devloop.log import get_logger
from devloop.manifest import EntryConfig


if TYPE_CHECKING:
    from devloop.compilers.base import CompilerFactory
    from devloop.compilers.models import CompileResult
    from devloop.config import Directories
    from devloop.manifest import ManifestGenerator


logger = get_logger(__name__)

CompileCallback = Callable[[str, "CompileResult"], object]


def copy_template(dirs: Directories) -> Path:
    """Copy template.html into the build directory.

    Raises:
        TemplateNotFoundError: If the template is missing. Mentions the new
            layout if the project still uses the old app/ directory.
    """
    if not dirs.template.is_file():
        if (dirs.cwd / "app" / "template.html").exists():
            msg = (
                "The default folder structure has changed:\n"
                "  app/    --> src/\n"
                "  routes/ --> src/routes/\n"
                "  assets/ --> static/"
            )
            raise TemplateNotFoundError(msg)
        msg = f"Template not found: {dirs.template}"
        raise TemplateNotFoundError(msg)
    target = dirs.dest / "template.html"
    shutil.copyfile(dirs.template, target)
    return target


async def build(
    config: BuildConfig | None = None,
    *,
    compilers: CompilerFactory,
    manifest: ManifestGenerator,
    oncompile: CompileCallback | None = None,
) -> dict[str, Any]:
    """Compile client, server and service worker once.

    Args:
        config: Build configuration
        compilers: Factory creating the configured compilers
        manifest: Route manifest and entry file generator
        oncompile: Called with `(type, result)` after every compile

    Returns:
        The build info written to build.json

    Raises:
        BundlerConfigError: For an invalid bundler or a legacy webpack build
        TemplateNotFoundError: If src/template.html does not exist
    """
    config = config or BuildConfig()
    dirs = config.resolve_dirs(config.dest)
    bundler = validate_bundler(config.bundler, dirs.cwd)
    if config.legacy and bundler == "webpack":
        msg = "Legacy builds are not supported for projects using webpack"
        raise BundlerConfigError(msg)

    def report(kind: str, result: CompileResult) -> None:
        logger.info(
            "Compiled",
            type=kind,
            duration=result.duration,
            errors=len(result.errors),
            warnings=len(result.warnings),
        )
        if oncompile is not None:
            oncompile(kind, result)

    prepare_directories(dirs)
    copy_template(dirs)

    manifest_data = manifest.generate(dirs.routes, config.ext)
    manifest.emit_entry_files(
        EntryConfig(bundler=bundler, manifest_data=manifest_data, dirs=dirs, dev=False)
    )

    targets = await compilers(bundler, dirs, dev=False)
    client_result = await targets.client.compile()
    report("client", client_result)
    build_info = client_result.to_build_info(dirs)

    if config.legacy:
        legacy = await compilers(bundler, dirs, dev=False, legacy=True)
        legacy_result = await legacy.client.compile()
        report("client (legacy)", legacy_result)
        build_info["legacy_assets"] = dict(legacy_result.assets)

    dirs.build_info.write_text(json.dumps(build_info, indent=2), encoding="utf-8")

    server_result = await targets.server.compile()
    report("server", server_result)

    if targets.serviceworker is not None:
        # the service worker does not need to precache sourcemaps
        client_files = [
            f"client/{chunk.file}"
            for chunk in client_result.chunks
            if not chunk.file.endswith(".map")
        ]
        manifest.emit_serviceworker_manifest(
            manifest_data, dirs.output, client_files, dirs.static
        )
        serviceworker_result = await targets.serviceworker.compile()
        report("serviceworker", serviceworker_result)

    return build_info
