"""Configuration management for the talkgate daemon."""

import getpass
import os
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_socket_path() -> Path:
    runtime_dir = os.environ.get("XDG_RUNTIME_DIR")
    if runtime_dir:
        return Path(runtime_dir) / "talkgate.sock"
    return Path("/tmp") / f"talkgate-{getpass.getuser()}.sock"


class TalkgateConfig(BaseSettings):
    """Configuration consumed by the command pipeline and IPC broker."""

    model_config = SettingsConfigDict(
        env_prefix="TALKGATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Admission
    confidence_threshold: float = 0.5
    min_command_interval_ms: int = 500

    # Confirmation / selection windows (seconds)
    confirmation_timeout_s: float = 10.0
    selection_timeout_s: float = 10.0

    # Risk classification
    high_risk_commands: List[str] = Field(
        default_factory=lambda: [
            "self_destruct",
            "eject",
            "abandon_ship",
            "purge",
            "delete_playlist",
        ]
    )

    # Confirmation vocabulary
    confirm_words: List[str] = Field(default_factory=lambda: ["confirm", "yes", "do it"])
    deny_words: List[str] = Field(default_factory=lambda: ["no", "deny", "abort"])
    cancel_words: List[str] = Field(default_factory=lambda: ["cancel", "stop", "never mind"])

    # Intent resolution
    phonetic_threshold: float = 0.7
    semantic_threshold: float = 0.75
    embedding_model: str = "all-MiniLM-L6-v2"
    fuzzy_entity_cutoff: float = 0.6
    corrections: Dict[str, str] = Field(default_factory=dict)
    entity_catalog_path: Optional[Path] = None

    # Dispatch
    action_timeout_s: float = 30.0
    action_commands: Dict[str, List[str]] = Field(default_factory=dict)

    # IPC
    ipc_socket_path: Path = Field(default_factory=_default_socket_path)
    ipc_max_message_bytes: int = 4096
    ipc_rate_per_second: float = 10.0
    ipc_rate_burst: int = 20
    ipc_replay_window_s: float = 60.0
    ipc_future_skew_s: float = 5.0
    ipc_send_timeout_s: float = 2.0
    ipc_outbox_size: int = 64

    # Audit
    audit_log_path: Optional[Path] = None

    # Message bus
    nats_url: str = "nats://localhost:4222"
    nats_max_reconnect_attempts: int = 10
    bus_enabled: bool = False

    # Logging
    log_level: str = "INFO"

    @field_validator("selection_timeout_s")
    @classmethod
    def _selection_window(cls, value: float) -> float:
        if value <= 0 or value > 10.0:
            raise ValueError("selection_timeout_s must be in (0, 10] seconds")
        return value

    @field_validator("confidence_threshold")
    @classmethod
    def _unit_interval(cls, value: float) -> float:
        if not 0.0 <= value <= 1.0:
            raise ValueError("confidence_threshold must be within [0, 1]")
        return value

    @property
    def config_dir(self) -> Path:
        """Get the config directory for talkgate."""
        config_home = os.environ.get("XDG_CONFIG_HOME")
        base = Path(config_home) if config_home else Path.home() / ".config"
        config_dir = base / "talkgate"
        config_dir.mkdir(parents=True, exist_ok=True)
        return config_dir

    @property
    def audit_path(self) -> Path:
        """Resolved append-only audit log location."""
        if self.audit_log_path is not None:
            return Path(self.audit_log_path).expanduser()
        return self.config_dir / "audit.log"

    @property
    def catalog_path(self) -> Path:
        """JSON entity catalog consulted by the validator."""
        if self.entity_catalog_path is not None:
            return Path(self.entity_catalog_path).expanduser()
        return self.config_dir / "library.json"

    @property
    def min_command_interval_s(self) -> float:
        return self.min_command_interval_ms / 1000.0

    def is_high_risk(self, intent_name: str) -> bool:
        return intent_name.lower() in {name.lower() for name in self.high_risk_commands}
