################################################################################
# DOCKVAULT
#
# @file:        target_registry.py
# @module:      dockvault.cores.target_registry
# @description: Discovers labelled containers and turns them into backup targets.
# @author:      DockVault Contributors
# @version:     1.0.0
#
# ------------------------------------------------------------------------------
# Copyright (c) 2025 DockVault Contributors
# MIT-Lizenz: siehe LICENSE oder https://opensource.org/licenses/MIT
# ==============================================================================
# Hinweise:
# - One malformed container never aborts discovery of the others
# - Target ids are unique; the second container claiming an id is rejected
# - Our own container is skipped so it never pauses itself
################################################################################

"""
Target discovery for DockVault.

Labels under the configured prefix (default ``dockvault.``) are parsed by the
``TargetLabels`` pydantic model and merged with the configured defaults.
"""

from __future__ import annotations

import re
import socket
import threading
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError, field_validator

from ..helpers.config import TargetDefaults
from ..helpers.constants import (
    DEFAULT_LABEL_PREFIX,
    LABEL_ACTION,
    LABEL_DRY_RUN,
    LABEL_ENABLE,
    LABEL_EXIT_CODES_SUFFIX,
    LABEL_HOOK_POST,
    LABEL_HOOK_PRE,
    LABEL_HOOK_USER,
    LABEL_NAME,
    LABEL_RETENTION_KEEP_LAST,
    LABEL_RETENTION_MAX_AGE,
    LABEL_RETRY_BACKOFF,
    LABEL_RETRY_BACKOFF_MAX,
    LABEL_RETRY_PREFIX,
    LABEL_SCHEDULE,
    LABEL_TIMEOUT_PREFIX,
    LABEL_VOLUMES,
    RETRY_PHASES,
    TIMEOUT_PHASES,
)
from ..helpers.exceptions import ConfigError
from ..helpers.logging import get_logger
from ..types import (
    BackupTarget,
    ContainerRef,
    ExitCodePolicy,
    HookCommand,
    PhaseRetryPolicies,
    PhaseTimeouts,
    QuiesceAction,
    RetentionPolicy,
    RetryPolicy,
    VolumeSpec,
)
from .runtime_client import RuntimeClient

logger = get_logger(__name__)

NAME_PATTERN = re.compile(r"^[A-Za-z0-9._-]+$")


def _slug_from_path(path: str) -> str:
    slug = re.sub(r"[^A-Za-z0-9._-]+", "_", path.strip("/"))
    return slug or "root"


class TargetLabels(BaseModel):
    """Typed view of one container's ``<prefix>.*`` labels."""

    enable: bool = False
    name: Optional[str] = None
    schedule: Optional[str] = None
    volumes: Optional[Tuple[VolumeSpec, ...]] = None
    action: Optional[QuiesceAction] = None
    hook_pre: Optional[str] = None
    hook_post: Optional[str] = None
    hook_user: Optional[str] = None
    hook_pre_exit_codes: ExitCodePolicy = Field(default_factory=ExitCodePolicy)
    hook_post_exit_codes: ExitCodePolicy = Field(default_factory=ExitCodePolicy)
    retry_attempts: Dict[str, int] = Field(default_factory=dict)
    retry_backoff: Optional[float] = Field(default=None, ge=0)
    retry_backoff_max: Optional[float] = Field(default=None, ge=0)
    keep_last: Optional[int] = Field(default=None, ge=1)
    max_age_days: Optional[int] = Field(default=None, ge=1)
    timeouts: Dict[str, float] = Field(default_factory=dict)
    dry_run: Optional[bool] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip()
        if not NAME_PATTERN.match(v):
            raise ValueError(f"target name {v!r} must match [A-Za-z0-9._-]+")
        return v

    @field_validator("schedule", "hook_pre", "hook_post", "hook_user")
    @classmethod
    def strip_blank(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return v.strip() or None

    @field_validator("volumes", mode="before")
    @classmethod
    def parse_volumes(cls, v):
        if v is None or not isinstance(v, str):
            return v
        specs: List[VolumeSpec] = []
        for item in v.split(","):
            item = item.strip()
            if not item:
                continue
            if "=" in item:
                name, path = (part.strip() for part in item.split("=", 1))
            else:
                name, path = _slug_from_path(item), item
            specs.append(VolumeSpec(name=name, path=path))
        if not specs:
            raise ValueError("volumes label is empty")
        return tuple(specs)

    @field_validator("volumes")
    @classmethod
    def validate_volumes(cls, v: Optional[Tuple[VolumeSpec, ...]]):
        if v is None:
            return v
        _check_volume_specs(v)
        return v

    @field_validator("hook_pre_exit_codes", "hook_post_exit_codes", mode="before")
    @classmethod
    def parse_exit_codes(cls, v):
        if isinstance(v, str):
            return ExitCodePolicy.parse(v)
        return v

    @field_validator("retry_attempts")
    @classmethod
    def validate_attempts(cls, v: Dict[str, int]) -> Dict[str, int]:
        for phase, count in v.items():
            if phase not in RETRY_PHASES:
                raise ValueError(f"unknown retry phase {phase!r}")
            if count < 1:
                raise ValueError(f"retry.{phase}.attempts must be >= 1")
        return v

    @field_validator("timeouts")
    @classmethod
    def validate_timeouts(cls, v: Dict[str, float]) -> Dict[str, float]:
        for phase, seconds in v.items():
            if phase not in TIMEOUT_PHASES:
                raise ValueError(f"unknown timeout phase {phase!r}")
            if seconds <= 0:
                raise ValueError(f"timeout.{phase} must be positive")
        return v

    @classmethod
    def from_labels(cls, labels: Mapping[str, str], prefix: str = DEFAULT_LABEL_PREFIX) -> TargetLabels:
        """Collect ``<prefix>.*`` labels into model input and validate them."""
        head = prefix.rstrip(".") + "."
        own = {k[len(head):]: v for k, v in labels.items() if k.startswith(head)}

        data: Dict[str, object] = {"retry_attempts": {}, "timeouts": {}}
        simple = {
            LABEL_ENABLE: "enable",
            LABEL_NAME: "name",
            LABEL_SCHEDULE: "schedule",
            LABEL_VOLUMES: "volumes",
            LABEL_ACTION: "action",
            LABEL_HOOK_PRE: "hook_pre",
            LABEL_HOOK_POST: "hook_post",
            LABEL_HOOK_USER: "hook_user",
            LABEL_HOOK_PRE + LABEL_EXIT_CODES_SUFFIX: "hook_pre_exit_codes",
            LABEL_HOOK_POST + LABEL_EXIT_CODES_SUFFIX: "hook_post_exit_codes",
            LABEL_RETRY_BACKOFF: "retry_backoff",
            LABEL_RETRY_BACKOFF_MAX: "retry_backoff_max",
            LABEL_RETENTION_KEEP_LAST: "keep_last",
            LABEL_RETENTION_MAX_AGE: "max_age_days",
            LABEL_DRY_RUN: "dry_run",
        }
        for key, value in own.items():
            if key in simple:
                data[simple[key]] = value
            elif key.startswith(LABEL_RETRY_PREFIX) and key.endswith(".attempts"):
                phase = key[len(LABEL_RETRY_PREFIX):-len(".attempts")]
                data["retry_attempts"][phase] = value
            elif key.startswith(LABEL_TIMEOUT_PREFIX):
                data["timeouts"][key[len(LABEL_TIMEOUT_PREFIX):]] = value
            else:
                logger.debug(f"Ignoring unknown label {head}{key}")
        return cls.model_validate(data)

    def to_target(self, container: ContainerRef, defaults: TargetDefaults) -> BackupTarget:
        """Merge with the configured defaults into an immutable BackupTarget."""
        target_id = self.name or container.name
        if not NAME_PATTERN.match(target_id):
            raise ConfigError(f"container name {target_id!r} is not a valid target id", target=target_id)

        volumes = self.volumes if self.volumes is not None else _volumes_from_mounts(container)
        if not volumes:
            raise ConfigError("no volumes to back up", target=target_id)
        try:
            _check_volume_specs(volumes)
        except ValueError as e:
            raise ConfigError(str(e), target=target_id)

        hook_user = self.hook_user or defaults.hook_user
        backoff = self.retry_backoff if self.retry_backoff is not None else defaults.backoff
        backoff_max = self.retry_backoff_max if self.retry_backoff_max is not None else defaults.backoff_max
        retry = PhaseRetryPolicies(**{
            phase: RetryPolicy(
                max_attempts=self.retry_attempts.get(phase, defaults.attempts.get(phase, 3)),
                backoff=backoff,
                backoff_max=backoff_max,
            )
            for phase in RETRY_PHASES
        })

        return BackupTarget(
            id=target_id,
            container=container,
            schedule=self.schedule or defaults.schedule,
            volumes=tuple(volumes),
            action=self.action or defaults.action,
            pre_hook=HookCommand(self.hook_pre, hook_user, self.hook_pre_exit_codes) if self.hook_pre else None,
            post_hook=HookCommand(self.hook_post, hook_user, self.hook_post_exit_codes) if self.hook_post else None,
            retry=retry,
            retention=RetentionPolicy(
                keep_last=self.keep_last if self.keep_last is not None else defaults.keep_last,
                max_age_days=self.max_age_days if self.max_age_days is not None else defaults.max_age_days,
            ),
            timeouts=PhaseTimeouts(**{**defaults.timeouts, **self.timeouts}),
            dry_run=self.dry_run if self.dry_run is not None else defaults.dry_run,
        )


def _check_volume_specs(specs) -> None:
    seen = set()
    for spec in specs:
        if not NAME_PATTERN.match(spec.name):
            raise ValueError(f"volume name {spec.name!r} must match [A-Za-z0-9._-]+")
        if not spec.path.startswith("/"):
            raise ValueError(f"volume path {spec.path!r} must be absolute")
        if spec.name in seen:
            raise ValueError(f"duplicate volume name {spec.name!r}")
        seen.add(spec.name)


def _volumes_from_mounts(container: ContainerRef) -> Tuple[VolumeSpec, ...]:
    specs = []
    for mount in container.mounts:
        if mount.type == "volume" and mount.name and NAME_PATTERN.match(mount.name):
            name = mount.name
        else:
            name = _slug_from_path(mount.destination)
        specs.append(VolumeSpec(name=name, path=mount.destination))
    return tuple(specs)


class TargetRegistry:
    """
    Holds the current set of backup targets.

    ``discover`` replaces the set atomically; running jobs keep the target
    object they were admitted with.
    """

    def __init__(
        self,
        runtime: RuntimeClient,
        label_prefix: str = DEFAULT_LABEL_PREFIX,
        defaults: Optional[Callable[[], TargetDefaults]] = None,
        self_container: Optional[str] = None,
    ):
        self.runtime = runtime
        self.label_prefix = label_prefix.rstrip(".")
        self._defaults = defaults or TargetDefaults
        self.self_container = self_container
        self._hostname = socket.gethostname()
        self._lock = threading.Lock()
        self._targets: Dict[str, BackupTarget] = {}
        self.errors: Dict[str, str] = {}

    @classmethod
    def from_config(cls, runtime: RuntimeClient, config) -> TargetRegistry:
        return cls(
            runtime,
            label_prefix=config.label_prefix,
            defaults=config.target_defaults,
            self_container=config.get('docker', 'self_container', fallback='') or None,
        )

    @property
    def targets(self) -> Dict[str, BackupTarget]:
        with self._lock:
            return dict(self._targets)

    def get(self, target_id: str) -> Optional[BackupTarget]:
        with self._lock:
            return self._targets.get(target_id)

    def discover(self) -> List[BackupTarget]:
        """
        Query the runtime and rebuild the target set.

        Returns:
            Targets unique by id, in discovery order

        Raises:
            ContainerRuntimeError: If the runtime could not be listed
            ConfigError: If the configured defaults are invalid
        """
        defaults = self._defaults()
        containers = self.runtime.list_containers(f"{self.label_prefix}.{LABEL_ENABLE}=true")

        targets: Dict[str, BackupTarget] = {}
        errors: Dict[str, str] = {}
        for container in containers:
            if self._is_self(container):
                logger.debug(f"Skipping own container {container.name}", extra={'container': container.name})
                continue
            key = container.labels.get(f"{self.label_prefix}.{LABEL_NAME}") or container.name
            try:
                target = self.parse_container(container, defaults)
                if target.id in targets:
                    raise ConfigError(
                        f"id already claimed by container {targets[target.id].container.name}",
                        target=target.id,
                    )
                targets[target.id] = target
            except ConfigError as e:
                errors[f"{key}@{container.short_id}" if key in targets else key] = str(e)
                logger.error(f"Skipping container {container.name}: {e}",
                             extra={'target': key, 'container': container.name})

        with self._lock:
            added = set(targets) - set(self._targets)
            removed = set(self._targets) - set(targets)
            self._targets = targets
            self.errors = errors

        for target_id in sorted(added):
            logger.info(f"Discovered target {target_id}", extra={'target': target_id})
        for target_id in sorted(removed):
            logger.info(f"Target {target_id} removed", extra={'target': target_id})
        return list(targets.values())

    def parse_container(self, container: ContainerRef, defaults: Optional[TargetDefaults] = None) -> BackupTarget:
        """
        Parse one container's labels into a BackupTarget.

        Raises:
            ConfigError: If the labels are malformed
        """
        defaults = defaults or self._defaults()
        key = container.labels.get(f"{self.label_prefix}.{LABEL_NAME}") or container.name
        try:
            labels = TargetLabels.from_labels(container.labels, self.label_prefix)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise ConfigError(problems, target=key)
        if not labels.enable:
            raise ConfigError("not enabled", target=key)
        return labels.to_target(container, defaults)

    def _is_self(self, container: ContainerRef) -> bool:
        if self.self_container and (
            container.name == self.self_container or container.id.startswith(self.self_container)
        ):
            return True
        # inside a container the hostname defaults to the short container id
        return len(self._hostname) >= 12 and container.id.startswith(self._hostname)
