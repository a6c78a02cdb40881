"""structlog setup and a reporter turning session events into log lines."""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING, Any

import structlog

from devloop import events as ev


if TYPE_CHECKING:
    from psygnal import SignalInstance


LogLevel = int | str

ROOT = "devloop"


def _to_level(level: LogLevel) -> int:
    if isinstance(level, str):
        return logging.getLevelNamesMapping()[level.upper()]
    return level


def configure_logging(
    level: LogLevel = "INFO",
    *,
    use_colors: bool | None = None,
    json_logs: bool = False,
) -> None:
    """Route structlog through the stdlib root logger on stderr.

    Args:
        level: Logging level
        use_colors: Colored console output, auto-detected from the TTY if None
        json_logs: Render JSON lines instead of console output
    """
    logging.basicConfig(
        level=_to_level(level),
        handlers=[logging.StreamHandler(sys.stderr)],
        force=True,
        format="%(message)s",
    )
    # uvicorn installs its own access logger; the reload channel is chatty
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    if use_colors is None:
        use_colors = sys.stderr.isatty() and not json_logs

    processors: list[Any] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="%H:%M:%S"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if json_logs:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=use_colors))

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str, log_level: LogLevel | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structlog logger below the `devloop` namespace.

    Args:
        name: Module or component name. Prefixed with 'devloop.' unless it
            already lives in that namespace.
        log_level: Level set on the underlying stdlib logger
    """
    if name != ROOT and not name.startswith(f"{ROOT}."):
        name = f"{ROOT}.{name}"
    if log_level is not None:
        logging.getLogger(name).setLevel(_to_level(log_level))
    return structlog.get_logger(name)


class EventReporter:
    """Logs session events in a human-readable way.

    Connect it to `Watcher.event_emitted`:

        ```python
        reporter = EventReporter()
        reporter.connect(watcher.event_emitted)
        ```
    """

    def __init__(self, logger: structlog.stdlib.BoundLogger | None = None) -> None:
        self.log = logger or get_logger("session")

    def connect(self, signal: SignalInstance) -> None:
        signal.connect(self.report)

    def disconnect(self, signal: SignalInstance) -> None:
        signal.disconnect(self.report)

    def report(self, event: ev.Event) -> None:
        match event:
            case ev.ReadyEvent(port=port):
                self.log.info("Server listening", port=port)
            case ev.InvalidEvent(changed=changed):
                self.log.info("Rebuilding", changed=list(changed))
            case ev.BuildEvent():
                self._report_build(event)
            case ev.ErrorEvent(type=kind, error=error):
                self.log.error("Compile failed", target=kind, error=str(error))
            case ev.FatalEvent(message=message):
                self.log.critical(message)
            case ev.BasepathEvent(basepath=basepath):
                self.log.info("Base path", basepath=basepath)
            # server output is forwarded verbatim
            case ev.StdoutEvent(chunk=chunk):
                sys.stdout.write(chunk)
                sys.stdout.flush()
            case ev.StderrEvent(chunk=chunk):
                sys.stderr.write(chunk)
                sys.stderr.flush()

    def _report_build(self, event: ev.BuildEvent) -> None:
        from devloop.compilers.diagnostics import count_duplicates

        fresh_errors = [d for d in event.errors if not d.duplicate]
        fresh_warnings = [d for d in event.warnings if not d.duplicate]
        self.log.info(
            "Built",
            target=event.type,
            duration_ms=round(event.duration),
            errors=len(event.errors),
            warnings=len(event.warnings),
            repeated=count_duplicates((*event.errors, *event.warnings)),
        )
        for diagnostic in fresh_errors:
            self.log.error(
                diagnostic.message,
                file=diagnostic.file,
                line=diagnostic.line,
                column=diagnostic.column,
            )
        for diagnostic in fresh_warnings:
            self.log.warning(
                diagnostic.message,
                file=diagnostic.file,
                line=diagnostic.line,
                column=diagnostic.column,
            )
