"""
Runtime configuration for speedmon.

Every knob is read from the environment once, at startup, into a frozen
`Settings` instance that is handed to the server, the supervisor and the
detection facility. Nothing else in the package reads `os.environ`.

Environment
-----------
SPEEDMON_TOOL                  : Measurement tool command line (default "speedtest").
SPEEDMON_TOOL_EXTRA_ARGS       : Extra arguments appended to every tool invocation (shell quoting).
SPEEDMON_SERVER_ID             : Fixed measurement-server selector (default "10493").
                                 Set to an empty string to let the tool auto-select.
SPEEDMON_PROGRESS_INTERVAL_MS  : Tool progress emission interval (default 250).
SPEEDMON_TIMEOUT               : Hard measurement timeout in seconds (default 300).
SPEEDMON_KILL_GRACE            : Seconds between SIGTERM and SIGKILL (default 5).
SPEEDMON_DB_PATH               : SQLite result store (default "speedmon.db").
SPEEDMON_OFFICES_FILE          : JSON office records (default "offices.json").
SPEEDMON_APP_TIMEZONE          : Server zone for the time-window fallback (default $TZ or "UTC").
SPEEDMON_DETECTION_SERVICES    : Comma separated lookup URL templates, "{ip}" is optional.
SPEEDMON_DETECTION_TIMEOUT     : Per-lookup timeout in seconds (default 5).
SPEEDMON_DETECTION_IGNORE      : Comma separated organization substrings to reject (default "railway").
SPEEDMON_SHARED_INFRASTRUCTURE : Provider whose detection is tolerated in relaxed mode (default "PLDT").
SPEEDMON_IDENTITY_TABLE        : Optional JSON file replacing the canonical/alias table.
"""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple

DEFAULT_DETECTION_SERVICES = (
    "https://ipapi.co/{ip}/json/",
    "https://ipwhois.app/json/{ip}",
    "http://ip-api.com/json/{ip}",
)


def _split_csv(raw: str) -> Tuple[str, ...]:
    return tuple(part.strip() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class Settings:
    """
    Immutable bundle of runtime settings.

    Attributes:
        tool_command: argv prefix of the measurement tool.
        server_id: measurement-server selector, or None for auto-selection.
        progress_interval_ms: how often the tool emits progress events.
        timeout: hard wall-clock limit for one measurement, in seconds.
        kill_grace: seconds to wait after SIGTERM before SIGKILL.
        db_path: SQLite file backing the result store.
        offices_file: JSON file backing the office directory.
        app_timezone: zone used when a caller's zone cannot be evaluated.
        detection_services: address-to-organization lookup URL templates.
        detection_timeout: per-lookup timeout in seconds.
        detection_ignore: organization substrings treated as "not detected".
        shared_infrastructure: provider tolerated by relaxed validation.
        identity_table: optional path to a JSON canonical/alias table.
    """

    tool_command: Tuple[str, ...] = ("speedtest",)
    server_id: Optional[str] = "10493"
    progress_interval_ms: int = 250
    timeout: float = 300.0
    kill_grace: float = 5.0
    db_path: str = "speedmon.db"
    offices_file: str = "offices.json"
    app_timezone: str = "UTC"
    detection_services: Tuple[str, ...] = DEFAULT_DETECTION_SERVICES
    detection_timeout: float = 5.0
    detection_ignore: Tuple[str, ...] = ("railway",)
    shared_infrastructure: str = "PLDT"
    identity_table: Optional[str] = None
    extra_tool_args: Tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self):
        if not self.tool_command:
            raise ValueError("tool_command must name an executable")
        if self.timeout <= 0:
            raise ValueError(f"timeout must be positive, got {self.timeout!r}")
        if self.kill_grace < 0:
            raise ValueError(f"kill_grace must not be negative, got {self.kill_grace!r}")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        server_id = env.get("SPEEDMON_SERVER_ID", "10493").strip()
        services = env.get("SPEEDMON_DETECTION_SERVICES")
        return cls(
            tool_command=tuple(shlex.split(env.get("SPEEDMON_TOOL", "speedtest"))),
            server_id=server_id or None,
            progress_interval_ms=int(env.get("SPEEDMON_PROGRESS_INTERVAL_MS", "250")),
            timeout=float(env.get("SPEEDMON_TIMEOUT", "300")),
            kill_grace=float(env.get("SPEEDMON_KILL_GRACE", "5")),
            db_path=env.get("SPEEDMON_DB_PATH", "speedmon.db"),
            offices_file=env.get("SPEEDMON_OFFICES_FILE", "offices.json"),
            app_timezone=env.get("SPEEDMON_APP_TIMEZONE") or env.get("TZ") or "UTC",
            detection_services=_split_csv(services) if services else DEFAULT_DETECTION_SERVICES,
            detection_timeout=float(env.get("SPEEDMON_DETECTION_TIMEOUT", "5")),
            detection_ignore=_split_csv(env.get("SPEEDMON_DETECTION_IGNORE", "railway")),
            shared_infrastructure=env.get("SPEEDMON_SHARED_INFRASTRUCTURE", "PLDT").strip(),
            identity_table=env.get("SPEEDMON_IDENTITY_TABLE") or None,
            extra_tool_args=tuple(shlex.split(env.get("SPEEDMON_TOOL_EXTRA_ARGS", ""))),
        )

    @property
    def command(self) -> str:
        return self.tool_command[0]

    def tool_args(self) -> list[str]:
        """
        Arguments passed after the executable: any argv tail from
        `tool_command`, then the JSON/progress/licensing flags, then the
        server selector when one is configured.
        """
        args = list(self.tool_command[1:])
        args += [
            "--format=json",
            "--accept-license",
            "--accept-gdpr",
            "--progress=yes",
            f"--progress-update-interval={self.progress_interval_ms}",
        ]
        if self.server_id:
            args.append(f"--server-id={self.server_id}")
        args += list(self.extra_tool_args)
        return args

    def timeout_label(self) -> str:
        # "5 minutes" for the default, seconds otherwise
        if self.timeout >= 60 and self.timeout % 60 == 0:
            minutes = int(self.timeout // 60)
            return f"{minutes} minute{'s' if minutes != 1 else ''}"
        return f"{self.timeout:g} second{'s' if self.timeout != 1 else ''}"
