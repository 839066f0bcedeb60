"""Configuration models for pvelxcbuild using Pydantic v2."""

from __future__ import annotations

import ipaddress
import os
import re
from pathlib import Path
from typing import Any, Literal, Optional, Union
from urllib.parse import ParseResult, urlparse

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    ValidationError,
    field_validator,
)

from pvelxcbuild.errors import ConfigError
from pvelxcbuild.utils.logging import get_logger, log_secret_filter

logger = get_logger(__name__)

DEFAULT_MAC = "1e:eb:08:d1:e7:e2"
DEFAULT_MEMORY = 512
MIN_MEMORY = 16

_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600}


def parse_duration(value: Union[str, int, float]) -> float:
    """Parse a Go-style duration ("90s", "5m", "1h30m") into seconds.

    Plain numbers are taken as seconds.
    """
    if isinstance(value, (int, float)):
        return float(value)
    text = value.strip()
    if not text:
        return 0.0
    try:
        return float(text)
    except ValueError:
        pass
    pos = 0
    total = 0.0
    for match in _DURATION_RE.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        raise ValueError(f"invalid duration {value!r}")
    return total


class CommunicatorConfig(BaseModel):
    """How the build reaches the guest once the container is running."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    type: str = Field("ssh", description="Communicator type: ssh or none")
    ssh_host: str = Field("", description="Filled from provision_ip")
    ssh_port: int = Field(22, description="Filled from provision_port")
    ssh_username: str = Field("root")
    ssh_password: Optional[SecretStr] = Field(None, description="Filled from provision_password")
    ssh_private_key_file: Optional[Path] = Field(None, description="Filled from provision_private_key_file")
    ssh_agent_auth: bool = Field(False, description="Also try keys from a running ssh-agent")
    ssh_timeout: float = Field(300.0, description="How long to keep retrying the connection")
    ssh_handshake_attempts: int = Field(10, ge=1)
    ssh_clear_authorized_keys: bool = Field(False, description="Remove the bootstrap key before export")

    @field_validator("ssh_timeout", mode="before")
    @classmethod
    def _duration(cls, v: Any) -> float:
        return parse_duration(v)


class BuildConfig(BaseModel):
    """Builder configuration: one throwaway container turned into a template."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    # ── Proxmox endpoint ─────────────────────────────────────────
    proxmox_url: str = Field("", description="API URL, e.g. https://pve:8006/api2/json")
    insecure_skip_tls_verify: bool = Field(False)
    username: str = Field("", description="API user, e.g. root@pam")
    password: Optional[SecretStr] = Field(None)
    node: str = Field("", description="Node the container is created on")
    pool: str = Field("", description="Optional resource pool")

    # ── Container sizing ─────────────────────────────────────────
    hostname: str = Field("")
    memory: int = Field(DEFAULT_MEMORY, description="Memory in MiB")
    cores: int = Field(1)
    unprivileged: bool = Field(False)
    vmid: int = Field(0, ge=0, description="0 asks Proxmox for the next free id")
    template_file: str = Field("", description="Base template volume, e.g. local:vztmpl/debian.tar.zst")
    template_storage_pool: str = Field("local", description="Storage the vzdump archive is written to")
    filesystem_storage: str = Field("")
    filesystem_size: int = Field(0, description="Root filesystem size in GiB")

    # ── Provisioning channel ─────────────────────────────────────
    provision_ip: str = Field("", description="Static address (optionally CIDR) or 'dhcp'")
    provision_netmask_bits: int = Field(24, ge=1, le=32, description="Prefix used when provision_ip has none")
    provision_gateway: str = Field("")
    provision_bridge: str = Field("vmbr0")
    provision_mac: str = Field(DEFAULT_MAC)
    provision_port: int = Field(22)
    provision_public_key_file: Optional[Path] = Field(None)
    provision_private_key_file: Optional[Path] = Field(None)
    provision_password: SecretStr = Field(SecretStr("provision"))

    # ── Output ───────────────────────────────────────────────────
    output_path: Optional[Path] = Field(None, description="Local path of the .tar.gz template")

    # ── Scratch HTTP server ──────────────────────────────────────
    http_directory: str = Field("")
    http_port_min: int = Field(8000, ge=0, le=65535)
    http_port_max: int = Field(9000, ge=0, le=65535)
    http_bind_address: str = Field("0.0.0.0")

    # ── Guest communicator / boot ────────────────────────────────
    communicator: CommunicatorConfig = Field(default_factory=CommunicatorConfig)
    boot_wait: float = Field(0.0, description="Pause after the container is started")

    # ── Backup export ────────────────────────────────────────────
    vzdump_remove: bool = Field(True, description="Pass remove=1 to vzdump (prune old backups)")
    backup_dump_dir: str = Field("", description="Node-local dump directory override")
    node_ssh_username: str = Field("")
    node_ssh_password: Optional[SecretStr] = Field(None)
    node_ssh_port: int = Field(22)
    node_ssh_host_key: str = Field("", description="OpenSSH public host key of the node")
    node_ssh_insecure_skip_host_key: bool = Field(False)

    # ── REST client ──────────────────────────────────────────────
    task_timeout: float = Field(1200.0, gt=0)
    task_poll_interval: float = Field(2.0, gt=0)

    @field_validator("boot_wait", "task_timeout", "task_poll_interval", mode="before")
    @classmethod
    def _duration(cls, v: Any) -> float:
        return parse_duration(v)

    @field_validator("provision_public_key_file", "provision_private_key_file", "output_path")
    @classmethod
    def _expand_user(cls, v: Optional[Path]) -> Optional[Path]:
        return v.expanduser() if v is not None else v

    @property
    def parsed_url(self) -> ParseResult:
        return urlparse(self.proxmox_url)

    @property
    def password_value(self) -> str:
        return self.password.get_secret_value() if self.password else ""

    @property
    def node_password_value(self) -> str:
        if self.node_ssh_password is not None:
            return self.node_ssh_password.get_secret_value()
        return self.password_value

    @property
    def uses_dhcp(self) -> bool:
        return self.provision_ip.lower() == "dhcp"

    @property
    def provision_host(self) -> str:
        """provision_ip without any prefix length; empty for DHCP."""
        if self.uses_dhcp:
            return ""
        return self.provision_ip.split("/", 1)[0]

    @property
    def provision_cidr(self) -> str:
        if self.uses_dhcp:
            return "dhcp"
        if "/" in self.provision_ip:
            return self.provision_ip
        return f"{self.provision_ip}/{self.provision_netmask_bits}"

    @classmethod
    def from_yaml(cls, path: str | Path) -> "BuildConfig":
        """Load and prepare a builder configuration from a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        _, config = prepare(data)
        return config


def _merge(raws: tuple[Any, ...]) -> dict[str, Any]:
    merged: dict[str, Any] = {}
    for raw in raws:
        if raw is None:
            continue
        if isinstance(raw, BaseModel):
            raw = raw.model_dump()
        if not isinstance(raw, dict):
            raise ConfigError([f"configuration must be a mapping, got {type(raw).__name__}"])
        for key, value in raw.items():
            if isinstance(value, dict) and isinstance(merged.get(key), dict):
                merged[key] = {**merged[key], **value}
            else:
                merged[key] = value
    return merged


def _format_validation_error(exc: ValidationError) -> list[str]:
    messages = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err["loc"]) or "config"
        if err["type"] == "extra_forbidden":
            messages.append(f"unknown configuration key: {loc}")
        else:
            messages.append(f"{loc}: {err['msg']}")
    return messages


def prepare(*raws: Any) -> tuple[list[str], BuildConfig]:
    """Decode, default and validate one or more raw configuration mappings.

    Later mappings override earlier ones. Returns the warnings produced
    while applying defaults together with the frozen BuildConfig.

    Raises:
        ConfigError: listing every problem found
    """
    data = _merge(raws)

    # Environment fallbacks for the endpoint credentials
    if not data.get("proxmox_url"):
        data["proxmox_url"] = os.environ.get("PROXMOX_URL", "")
    if not data.get("username"):
        data["username"] = os.environ.get("PROXMOX_USERNAME", "")
    if not data.get("password"):
        env_password = os.environ.get("PROXMOX_PASSWORD")
        data["password"] = SecretStr(env_password) if env_password else None

    try:
        config = BuildConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(_format_validation_error(e)) from e

    warnings: list[str] = []
    updates: dict[str, Any] = {}

    if config.memory < MIN_MEMORY:
        warnings.append(f"Memory {config.memory} is too small, using default: {DEFAULT_MEMORY}")
        updates["memory"] = DEFAULT_MEMORY
    if config.cores < 1:
        warnings.append(f"Number of cores {config.cores} is too small, using default: 1")
        updates["cores"] = 1
    if config.provision_port <= 0:
        updates["provision_port"] = 22
    if not config.provision_mac:
        updates["provision_mac"] = DEFAULT_MAC
    if not config.provision_password.get_secret_value():
        updates["provision_password"] = SecretStr("provision")
    if not config.template_storage_pool:
        updates["template_storage_pool"] = "local"
    if not config.http_bind_address:
        updates["http_bind_address"] = "0.0.0.0"
    if config.node_ssh_port <= 0:
        updates["node_ssh_port"] = 22
    if not config.node_ssh_username and config.username:
        node_user = config.username.replace("@pam", "", 1)
        if "@" in node_user:
            warnings.append(
                f"username {config.username} is not in the @pam realm; set node_ssh_username "
                f"to a system account that can read the backup dump directory"
            )
        updates["node_ssh_username"] = node_user

    config = config.model_copy(update=updates)

    errs: list[str] = []
    if not config.username:
        errs.append("username must be specified")
    if not config.password_value:
        errs.append("password must be specified")
    if not config.proxmox_url:
        errs.append("proxmox_url must be specified")
    else:
        url = config.parsed_url
        if url.scheme not in ("http", "https") or not url.hostname:
            errs.append(f"Could not parse proxmox_url: {config.proxmox_url!r}")
    if not config.node:
        errs.append("node must be specified")
    if " " in config.template_file:
        errs.append("template_file must not contain spaces")
    if not config.filesystem_storage:
        errs.append("filesystem_storage must be specified")
    if config.filesystem_size <= 0:
        errs.append("filesystem_size must be specified")
    if not config.provision_ip:
        errs.append("provision_ip must be specified")
    elif not config.uses_dhcp:
        try:
            ipaddress.ip_interface(config.provision_ip)
        except ValueError:
            errs.append(f"provision_ip {config.provision_ip!r} is not an IP address or 'dhcp'")
    if not config.provision_public_key_file:
        errs.append("provision_public_key_file must be specified")
    if not config.provision_private_key_file:
        errs.append("provision_private_key_file must be specified")
    if not config.output_path:
        errs.append("output_path must be specified")
    if config.http_port_min > config.http_port_max:
        errs.append("http_port_min must be less than http_port_max")
    if config.http_directory and not Path(config.http_directory).is_dir():
        errs.append(f"http_directory {config.http_directory!r} is not a directory")

    comm = config.communicator
    if comm.type not in ("ssh", "none"):
        errs.append(f"communicator type {comm.type!r} is not supported (use ssh or none)")
    elif comm.type == "ssh":
        comm = comm.model_copy(update={
            "ssh_host": config.provision_host,
            "ssh_port": config.provision_port,
            "ssh_private_key_file": config.provision_private_key_file,
            "ssh_password": config.provision_password,
        })
        key_file = comm.ssh_private_key_file
        if key_file is not None and not key_file.is_file():
            errs.append(f"ssh_private_key_file is invalid: {key_file} does not exist")
        if not comm.ssh_username:
            errs.append("An ssh_username must be specified")
        config = config.model_copy(update={"communicator": comm})

    if errs:
        raise ConfigError(errs)

    log_secret_filter.set(config.password_value, config.node_password_value)
    for w in warnings:
        logger.warning(w)
    return warnings, config


# --- Build file (builder + provisioners) ---

class ShellProvisioner(BaseModel):
    """Run commands inside the guest."""

    model_config = ConfigDict(extra="forbid")

    type: Literal["shell"] = "shell"
    inline: list[str] = Field(default_factory=list)
    script: Optional[Path] = None
    environment_vars: list[str] = Field(default_factory=list)

    @field_validator("environment_vars")
    @classmethod
    def _key_value(cls, v: list[str]) -> list[str]:
        for item in v:
            if "=" not in item:
                raise ValueError(f"environment variable {item!r} must be KEY=VALUE")
        return v


class FileProvisioner(BaseModel):
    """Upload a local file into the guest."""

    model_config = ConfigDict(extra="forbid")

    type: Literal["file"] = "file"
    source: Path
    destination: str


class BuildFile(BaseModel):
    """A complete build: builder settings plus ordered provisioners."""

    builder: dict[str, Any] = Field(default_factory=dict)
    provisioners: list[Union[ShellProvisioner, FileProvisioner]] = Field(default_factory=list)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "BuildFile":
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls(**data)
