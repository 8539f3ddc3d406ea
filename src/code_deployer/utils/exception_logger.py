"""Centralized exception logger for Code Deployer.

Writes every exception swallowed by an exception policy, and every failed
git command, to a JSON log file with:
- Timestamp and process ID-based log file names
- Complete stack traces
- Thread information
- Caller supplied context (repository, git command, stage)
"""

import json
import os
import threading
import traceback
from datetime import datetime
from pathlib import Path
from typing import Optional, Dict, Any


class ExceptionLogger:
    """Process wide exception log.

    CLI mode writes next to the project config, daemon mode writes to
    ~/.code-deployer/logs so a service account always has a writable place.
    """

    _instance: Optional["ExceptionLogger"] = None
    log_file_path: Optional[Path] = None

    def __init__(self, log_file_path: Path):
        self.log_file_path = log_file_path

    @classmethod
    def initialize(cls, config_dir: Path, mode: str = "cli") -> "ExceptionLogger":
        """Initialize the global exception logger (idempotent singleton).

        WARNING: This is a singleton. If already initialized, returns the
        existing instance. Tests should reset cls._instance = None if they
        need fresh instances.

        Args:
            config_dir: Directory holding the project config (.code-deployer)
            mode: Operating mode - "cli" or "daemon"

        Returns:
            Initialized ExceptionLogger instance
        """
        if cls._instance is not None:
            return cls._instance

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        pid = os.getpid()

        if mode == "daemon":
            log_dir = Path.home() / ".code-deployer" / "logs"
        else:
            log_dir = config_dir

        log_dir.mkdir(parents=True, exist_ok=True)
        log_file_path = log_dir / f"error_{timestamp}_{pid}.log"

        instance = cls(log_file_path)
        cls._instance = instance
        log_file_path.touch()

        return instance

    @classmethod
    def get_instance(cls) -> Optional["ExceptionLogger"]:
        """Return the current instance or None if not initialized."""
        return cls._instance

    def log_exception(
        self,
        exception: BaseException,
        thread_name: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Append an exception and its context to the log file."""
        if not self.log_file_path:
            return

        log_entry = {
            "timestamp": datetime.now().isoformat(),
            "thread": thread_name or threading.current_thread().name,
            "exception_type": type(exception).__name__,
            "exception_message": str(exception),
            "stack_trace": "".join(
                traceback.format_exception(
                    type(exception), exception, exception.__traceback__
                )
            ),
            "context": context or {},
        }

        with open(self.log_file_path, "a") as f:
            f.write(json.dumps(log_entry, indent=2, default=str))
            f.write("\n---\n")

    def install_thread_exception_hook(self) -> None:
        """Capture uncaught exceptions raised in scheduler threads."""

        def global_thread_exception_handler(args):
            self.log_exception(
                exception=args.exc_value,
                thread_name=args.thread.name if args.thread else None,
                context={
                    "exc_type": args.exc_type.__name__,
                    "thread_identifier": args.thread.ident if args.thread else None,
                },
            )

        threading.excepthook = global_thread_exception_handler
