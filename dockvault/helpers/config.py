#!/usr/bin/env python3
################################################################################
# DOCKVAULT
#
# @file:        config.py
# @module:      dockvault.helpers.config
# @description: INI configuration with environment overrides and target defaults
# @author:      DockVault Contributors
# @version:     1.0.0
#
# ------------------------------------------------------------------------------
# Copyright (c) 2025 DockVault Contributors
# MIT-Lizenz: siehe LICENSE oder https://opensource.org/licenses/MIT
################################################################################

"""
Configuration management for DockVault.

Handles loading, validation, and access to configuration settings.
Values resolve in this order: environment override, config file, built-in default.
"""

from __future__ import annotations

import configparser
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError, field_validator

from ..types import PhaseRetryPolicies, PhaseTimeouts, QuiesceAction, RetentionPolicy, RetryPolicy
from .constants import (
    ARCHIVE_COMPRESSIONS,
    CONFIG_ENV_VAR,
    CONTAINER_STOP_TIMEOUT,
    DEFAULT_ARCHIVE_BASE,
    DEFAULT_CONFIG_PATHS,
    DEFAULT_LABEL_PREFIX,
    DEFAULT_STATE_DIR,
    DOCKER_API_TIMEOUT,
    ENV_OVERRIDE_PREFIX,
    NOTIFICATION_TIMEOUT,
    QUIESCE_ACTIONS,
    RETRY_PHASES,
    SHUTDOWN_TIMEOUT,
    TIMEOUT_PHASES,
)
from .exceptions import ConfigError
from .logging import get_logger
from . import system_utils

logger = get_logger(__name__)

_SENSITIVE = re.compile(
    r'(password|secret|key|token|credential|auth|urls|webhook)',
    re.IGNORECASE
)


class TargetDefaults(BaseModel):
    """Per-target defaults applied when a container's labels leave a gap."""

    schedule: str = Field(default="0 3 * * *", description="Cron expression")
    action: QuiesceAction = Field(default=QuiesceAction.PAUSE, description="pause, stop or ignore")
    hook_user: Optional[str] = Field(default=None, description="Exec user for hooks")
    dry_run: bool = Field(default=False, description="Skip the sink write")
    attempts: Dict[str, int] = Field(
        default_factory=lambda: {phase: 3 for phase in RETRY_PHASES},
        description="Attempt budget per retryable phase"
    )
    backoff: float = Field(default=2.0, ge=0, description="Base backoff in seconds")
    backoff_max: float = Field(default=60.0, ge=0, description="Backoff ceiling in seconds")
    keep_last: Optional[int] = Field(default=None, ge=1, description="Archives to keep")
    max_age_days: Optional[int] = Field(default=None, ge=1, description="Maximum archive age")
    timeouts: Dict[str, float] = Field(
        default_factory=lambda: {
            "hook": 300.0, "quiesce": 120.0, "capture": 3600.0, "archive": 3600.0, "resume": 120.0
        },
        description="Seconds per phase"
    )

    @field_validator("attempts")
    @classmethod
    def validate_attempts(cls, v: Dict[str, int]) -> Dict[str, int]:
        for phase, count in v.items():
            if phase not in RETRY_PHASES:
                raise ValueError(f"Unknown retry phase: {phase}")
            if count < 1:
                raise ValueError(f"attempts for {phase} must be >= 1, got {count}")
        return v

    @field_validator("timeouts")
    @classmethod
    def validate_timeouts(cls, v: Dict[str, float]) -> Dict[str, float]:
        for phase, seconds in v.items():
            if phase not in TIMEOUT_PHASES:
                raise ValueError(f"Unknown timeout phase: {phase}")
            if seconds <= 0:
                raise ValueError(f"timeout for {phase} must be positive, got {seconds}")
        return v

    def retry_policies(self) -> PhaseRetryPolicies:
        return PhaseRetryPolicies(**{
            phase: RetryPolicy(self.attempts.get(phase, 3), self.backoff, self.backoff_max)
            for phase in RETRY_PHASES
        })

    def retention(self) -> RetentionPolicy:
        return RetentionPolicy(keep_last=self.keep_last, max_age_days=self.max_age_days)

    def phase_timeouts(self) -> PhaseTimeouts:
        return PhaseTimeouts(**self.timeouts)


class Config:
    """
    Configuration manager for DockVault.

    Loads configuration from an INI file layered over built-in defaults.
    Any option can be overridden with ``DOCKVAULT_<SECTION>_<OPTION>``.
    """

    def __init__(self, config_path: Optional[Path] = None):
        """
        Initialize configuration.

        Args:
            config_path: Optional path to config file
        """
        self._explicit_path = config_path
        self._config = configparser.ConfigParser(interpolation=None)
        self.config_file = self._find_config_file(config_path)
        self._load_config()

    # --------------- Properties ---------------

    @property
    def label_prefix(self) -> str:
        return self.get('discovery', 'label_prefix', fallback=DEFAULT_LABEL_PREFIX).rstrip('.')

    @property
    def discovery_interval(self) -> float:
        return self.getfloat('discovery', 'interval', fallback=300.0)

    @property
    def parallel_workers(self) -> int:
        """Worker pool size; ``auto`` derives it from RAM and CPU count."""
        value = self.get('backup', 'parallel_workers', fallback='auto')
        if str(value).strip().lower() == 'auto':
            return system_utils.worker_pool_size()
        return int(value)

    @property
    def archive_base(self) -> Path:
        return Path(self.get('archive', 'base_path', fallback=DEFAULT_ARCHIVE_BASE)).expanduser()

    @property
    def archive_compression(self) -> str:
        return self.get('archive', 'compression', fallback='gzip').lower()

    @property
    def spool_dir(self) -> Optional[str]:
        return self.get('archive', 'spool_dir', fallback='') or None

    @property
    def state_dir(self) -> Path:
        return Path(self.get('state', 'directory', fallback=DEFAULT_STATE_DIR)).expanduser()

    @property
    def timezone(self) -> str:
        return self.get('schedule', 'timezone', fallback='UTC')

    @property
    def tick_seconds(self) -> float:
        return self.getfloat('schedule', 'tick_seconds', fallback=60.0)

    @property
    def shutdown_timeout(self) -> float:
        return self.getfloat('shutdown', 'timeout', fallback=float(SHUTDOWN_TIMEOUT))

    # --------------- Core Methods ---------------

    def get(self, section: str, option: str, fallback: Any = None) -> Any:
        """Get configuration value; environment overrides win over the file."""
        env_key = f"{ENV_OVERRIDE_PREFIX}{section}_{option}".upper()
        if env_key in os.environ:
            return os.environ[env_key]
        try:
            return self._config.get(section, option)
        except (configparser.NoSectionError, configparser.NoOptionError):
            return fallback

    def getint(self, section: str, option: str, fallback: Optional[int] = None) -> Optional[int]:
        value = self.get(section, option)
        if value is None or str(value).strip() == '':
            return fallback
        try:
            return int(str(value).strip())
        except ValueError:
            raise ConfigError(f"[{section}] {option} must be an integer, got {value!r}")

    def getfloat(self, section: str, option: str, fallback: Optional[float] = None) -> Optional[float]:
        value = self.get(section, option)
        if value is None or str(value).strip() == '':
            return fallback
        try:
            return float(str(value).strip())
        except ValueError:
            raise ConfigError(f"[{section}] {option} must be a number, got {value!r}")

    def getboolean(self, section: str, option: str, fallback: bool = False) -> bool:
        value = self.get(section, option)
        if value is None or str(value).strip() == '':
            return fallback
        normalized = str(value).strip().lower()
        if normalized not in configparser.ConfigParser.BOOLEAN_STATES:
            raise ConfigError(f"[{section}] {option} must be a boolean, got {value!r}")
        return configparser.ConfigParser.BOOLEAN_STATES[normalized]

    def getlist(self, section: str, option: str, fallback: Optional[List[str]] = None) -> List[str]:
        """Comma or newline separated list."""
        value = self.get(section, option)
        if value is None:
            return list(fallback or [])
        items = [item.strip() for item in re.split(r'[,\n]', str(value))]
        return [item for item in items if item]

    def set(self, section: str, option: str, value: Any) -> None:
        """Set configuration value."""
        if not self._config.has_section(section):
            self._config.add_section(section)
        self._config.set(section, option, str(value))

    def save(self) -> None:
        """Save configuration to file atomically with proper permissions."""
        self.config_file.parent.mkdir(parents=True, exist_ok=True)
        temp_fd, temp_path = tempfile.mkstemp(
            dir=self.config_file.parent,
            prefix='.dockvault-config-',
            suffix='.tmp'
        )
        try:
            with os.fdopen(temp_fd, 'w', encoding='utf-8') as f:
                self._config.write(f)
            os.replace(temp_path, self.config_file)
            os.chmod(self.config_file, 0o600)
            logger.info(f"Configuration saved to {self.config_file}")
        except OSError as e:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            logger.error(f"Failed to save configuration: {e}")
            raise

    def reload(self) -> None:
        """Re-read the config file. Running jobs keep the targets they were started with."""
        previous = self._config, self.config_file
        self._config = configparser.ConfigParser(interpolation=None)
        self.config_file = self._find_config_file(self._explicit_path)
        try:
            self._load_config()
        except ConfigError:
            self._config, self.config_file = previous
            raise

    def items(self) -> Iterator[Tuple[str, str, str]]:
        """Yield ``(section, option, value)`` with sensitive values masked."""
        for section in self._config.sections():
            for option in self._config.options(section):
                value = str(self.get(section, option, fallback=''))
                if _SENSITIVE.search(option) and value:
                    value = f"{value[:3]}***MASKED***" if len(value) > 3 else '***MASKED***'
                yield section, option, value

    def display(self) -> None:
        """Display current configuration (with sensitive values masked)."""
        print(f"Configuration file: {self.config_file}")
        print("=" * 60)
        current = None
        for section, option, value in self.items():
            if section != current:
                print(f"\n[{section}]")
                current = section
            print(f"  {option} = {value}")

    def target_defaults(self) -> TargetDefaults:
        """
        Build the per-target defaults from [defaults], [retry], [timeouts] and [retention].

        Raises:
            ConfigError: If a value is out of range
        """
        base_attempts = self.getint('retry', 'attempts', fallback=3)
        attempts = {
            phase: self.getint('retry', f'{phase}_attempts', fallback=base_attempts)
            for phase in RETRY_PHASES
        }
        timeouts = {
            phase: self.getfloat('timeouts', phase, fallback=TargetDefaults().timeouts[phase])
            for phase in TIMEOUT_PHASES
        }
        try:
            return TargetDefaults(
                schedule=self.get('defaults', 'schedule', fallback='0 3 * * *'),
                action=self.get('defaults', 'action', fallback='pause'),
                hook_user=self.get('defaults', 'hook_user', fallback='') or None,
                dry_run=self.getboolean('defaults', 'dry_run', fallback=False),
                attempts=attempts,
                backoff=self.getfloat('retry', 'backoff', fallback=2.0),
                backoff_max=self.getfloat('retry', 'backoff_max', fallback=60.0),
                keep_last=self.getint('retention', 'keep_last'),
                max_age_days=self.getint('retention', 'max_age_days'),
                timeouts=timeouts,
            )
        except ValidationError as e:
            raise ConfigError(f"invalid target defaults: {e}")

    def validate(self) -> List[str]:
        """
        Validate the configuration against sensible value ranges.

        Returns:
            List of error messages (empty if everything is fine)
        """
        errors = []

        parallel_workers = str(self.get('backup', 'parallel_workers', fallback='auto')).strip()
        if parallel_workers.lower() != 'auto':
            try:
                workers = int(parallel_workers)
                if workers < 1 or workers > 32:
                    errors.append(f"parallel_workers out of range (1-32): {workers}")
            except ValueError:
                errors.append(f"parallel_workers must be 'auto' or integer: {parallel_workers}")

        if self.archive_compression not in ARCHIVE_COMPRESSIONS:
            errors.append(
                f"archive compression must be one of {', '.join(ARCHIVE_COMPRESSIONS)}: "
                f"{self.archive_compression}"
            )

        action = self.get('defaults', 'action', fallback='pause')
        if action not in QUIESCE_ACTIONS:
            errors.append(f"default action must be one of {', '.join(QUIESCE_ACTIONS)}: {action}")

        try:
            self.target_defaults()
        except ConfigError as e:
            errors.append(str(e))

        for section, option in (
            ('discovery', 'interval'),
            ('schedule', 'tick_seconds'),
            ('shutdown', 'timeout'),
            ('docker', 'api_timeout'),
            ('notifications', 'timeout'),
        ):
            try:
                value = self.getfloat(section, option)
                if value is not None and value <= 0:
                    errors.append(f"[{section}] {option} must be positive: {value}")
            except ConfigError as e:
                errors.append(str(e))

        try:
            from zoneinfo import ZoneInfo
            ZoneInfo(self.timezone)
        except (KeyError, ValueError) as e:
            errors.append(f"unknown timezone {self.timezone!r}: {e}")

        if self.getboolean('notifications', 'enabled', fallback=False) and \
                not self.getlist('notifications', 'urls'):
            errors.append("notifications enabled but no urls configured")

        return errors

    # --------------- Private Methods ---------------

    @staticmethod
    def _get_default_config() -> Dict[str, Dict[str, Any]]:
        """
        Get default configuration structure.

        Returns:
            Dictionary of default configuration sections and values
        """
        return {
            'docker': {
                'base_url': 'unix:///var/run/docker.sock',
                'api_timeout': DOCKER_API_TIMEOUT,
                'stop_timeout': CONTAINER_STOP_TIMEOUT,
                'self_container': '',
            },
            'discovery': {
                'label_prefix': DEFAULT_LABEL_PREFIX,
                'interval': 300,
            },
            'backup': {
                'parallel_workers': 'auto',
            },
            'defaults': {
                'schedule': '0 3 * * *',
                'action': 'pause',
                'hook_user': '',
                'dry_run': 'false',
            },
            'retry': {
                'attempts': 3,
                'hook_attempts': '',
                'capture_attempts': '',
                'resume_attempts': '',
                'sink_attempts': '',
                'backoff': 2,
                'backoff_max': 60,
            },
            'timeouts': {
                'hook': 300,
                'quiesce': 120,
                'capture': 3600,
                'archive': 3600,
                'resume': 120,
            },
            'retention': {
                'keep_last': 7,
                'max_age_days': '',
            },
            'archive': {
                'base_path': DEFAULT_ARCHIVE_BASE,
                'compression': 'gzip',
                'spool_dir': '',
            },
            'schedule': {
                'timezone': 'UTC',
                'tick_seconds': 60,
            },
            'shutdown': {
                'timeout': SHUTDOWN_TIMEOUT,
            },
            'state': {
                'directory': DEFAULT_STATE_DIR,
                'history_size': 100,
                'persist': 'true',
            },
            'logging': {
                'level': 'INFO',
                'file': '',
                'json': '',
                'max_size_mb': 100,
                'backup_count': 5,
            },
            'notifications': {
                'enabled': 'false',
                'urls': '',
                'on_success': 'false',
                'on_failure': 'true',
                'timeout': NOTIFICATION_TIMEOUT,
            },
        }

    def _find_config_file(self, config_path: Optional[Path] = None) -> Path:
        """
        Find or determine configuration file path.

        Args:
            config_path: Explicitly provided configuration path

        Returns:
            Path to configuration file (it may not exist yet)
        """
        if config_path:
            return Path(config_path).expanduser().resolve()

        env_path = os.environ.get(CONFIG_ENV_VAR)
        if env_path:
            return Path(env_path).expanduser().resolve()

        search_order = [
            DEFAULT_CONFIG_PATHS['user'],
            DEFAULT_CONFIG_PATHS['root'],
        ]
        for location in search_order:
            expanded_location = Path(location).expanduser()
            if expanded_location.exists():
                if os.access(expanded_location, os.R_OK):
                    logger.debug(f"Using config file: {expanded_location}")
                    return expanded_location
                logger.warning(f"Config file exists but not readable: {expanded_location}")

        if os.geteuid() == 0:
            path = Path(DEFAULT_CONFIG_PATHS['root'])
        else:
            path = Path(DEFAULT_CONFIG_PATHS['user'])
        return path.expanduser()

    def _load_config(self) -> None:
        """Load built-in defaults, then the config file on top if it exists."""
        self._config.read_dict(
            {section: {k: str(v) for k, v in values.items()}
             for section, values in self._get_default_config().items()}
        )
        if not self.config_file.exists():
            logger.debug(f"No configuration file at {self.config_file}, using defaults")
            return
        try:
            with open(self.config_file, 'r', encoding='utf-8') as f:
                self._config.read_file(f)
            logger.info(f"Configuration loaded from {self.config_file}")
        except UnicodeDecodeError as e:
            raise ConfigError(f"Config file encoding error (expected UTF-8): {e}")
        except configparser.Error as e:
            raise ConfigError(f"Failed to parse {self.config_file}: {e}")


def create_default_config(path: Optional[Path] = None, force: bool = False) -> Path:
    """
    Write the built-in defaults to a config file.

    Args:
        path: Optional path where to create the config file
        force: Overwrite existing file if True

    Returns:
        Path to the created config file
    """
    if path is None:
        if os.geteuid() == 0:
            path = Path(DEFAULT_CONFIG_PATHS['root'])
        else:
            path = Path(DEFAULT_CONFIG_PATHS['user'])
    path = Path(path).expanduser()

    if path.exists() and not force:
        logger.warning(f"Configuration file already exists at {path}")
        return path

    path.parent.mkdir(parents=True, exist_ok=True)
    parser = configparser.ConfigParser(interpolation=None)
    parser.read_dict(
        {section: {k: str(v) for k, v in values.items()}
         for section, values in Config._get_default_config().items()}
    )
    with open(path, 'w', encoding='utf-8') as f:
        parser.write(f)
    path.chmod(0o600)

    logger.info(f"Configuration created at {path}")
    return path
