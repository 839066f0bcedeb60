"""Proxmox VE REST API client.

Ticket-cookie authentication over a requests.Session, bounded retries for
transient failures, and a generic "POST then await the task" primitive that
every long-running operation (create, start, shutdown, delete, vzdump) is
built on.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import quote

import requests
import urllib3

from pvelxcbuild.errors import (
    BuildCancelled,
    ProxmoxAPIError,
    ProxmoxTransientError,
    TaskFailedError,
)
from pvelxcbuild.utils.logging import get_logger

logger = get_logger(__name__)

API_PATH = "/api2/json"


@dataclass(frozen=True)
class VmRef:
    """Identifies one guest on one node."""
    vmid: int
    node: str
    vm_type: str = "lxc"

    @property
    def path(self) -> str:
        return f"/nodes/{self.node}/{self.vm_type}/{self.vmid}"


def node_from_upid(upid: str) -> str:
    """Extract the node name from a UPID (UPID:node:pid:...)."""
    parts = upid.split(":")
    if len(parts) < 3 or parts[0] != "UPID":
        raise ValueError(f"Malformed task id: {upid!r}")
    return parts[1]


class ProxmoxClient:
    """Interact with the Proxmox VE API for LXC lifecycle and backups."""

    def __init__(
        self,
        url: str,
        username: str,
        password: str,
        verify_tls: bool = True,
        timeout: float = 1200,
        poll_interval: float = 2.0,
        max_retries: int = 3,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = self._normalize_url(url)
        self.username = username
        self._password = password
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.max_retries = max_retries
        self.session = session or requests.Session()
        self.session.verify = verify_tls
        if not verify_tls:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    @staticmethod
    def _normalize_url(url: str) -> str:
        url = url.rstrip("/")
        if not url.endswith(API_PATH):
            url += API_PATH
        return url

    # ── Transport ────────────────────────────────────────────────

    def login(self) -> None:
        """Obtain a ticket and CSRF token for the configured user."""
        resp = self._send(
            "POST", "/access/ticket",
            data={"username": self.username, "password": self._password},
        )
        if resp.status_code == 401:
            raise ProxmoxAPIError(401, "authentication failure")
        data = self._decode(resp)
        self.session.cookies.set("PVEAuthCookie", data["ticket"])
        self.session.headers["CSRFPreventionToken"] = data["CSRFPreventionToken"]
        logger.info(f"Logged in to Proxmox as {self.username}")

    def _send(self, method: str, path: str, **kwargs) -> requests.Response:
        url = f"{self.base_url}{path}"
        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_retries + 1):
            try:
                resp = self.session.request(method, url, timeout=self.timeout, **kwargs)
            except (requests.ConnectionError, requests.Timeout) as e:
                last_error = e
            else:
                if resp.status_code < 500:
                    return resp
                if not self._is_transient(resp):
                    return resp
                last_error = ProxmoxAPIError(resp.status_code, self._error_message(resp))

            if attempt < self.max_retries:
                delay = 2 ** attempt
                logger.warning(f"{method} {path} failed: {last_error}. Retrying in {delay}s...")
                time.sleep(delay)

        raise ProxmoxTransientError(f"{method} {path} failed after {self.max_retries} attempts: {last_error}")

    @staticmethod
    def _is_transient(resp: requests.Response) -> bool:
        # PVE reports a missing guest as a 500; retrying cannot help
        return "does not exist" not in (resp.reason or "") + resp.text

    @staticmethod
    def _error_message(resp: requests.Response) -> str:
        message = resp.reason or ""
        try:
            body = resp.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            if body.get("message"):
                message = str(body["message"]).strip()
            errors = body.get("errors")
            if isinstance(errors, dict) and errors:
                details = ", ".join(f"{k}: {str(v).strip()}" for k, v in errors.items())
                message = f"{message} ({details})" if message else details
        return message or resp.text[:500]

    def _decode(self, resp: requests.Response) -> Any:
        if not resp.ok:
            message = self._error_message(resp)
            logger.error(f"API error {resp.status_code}: {message}")
            raise ProxmoxAPIError(resp.status_code, message)
        if not resp.content:
            return None
        return resp.json().get("data")

    def request(self, method: str, path: str, **kwargs) -> Any:
        """Issue an authenticated call and return the unwrapped `data` field."""
        resp = self._send(method, path, **kwargs)
        if resp.status_code == 401:
            logger.info("Proxmox ticket expired, logging in again")
            self.login()
            resp = self._send(method, path, **kwargs)
        return self._decode(resp)

    def get(self, path: str, params: Optional[dict] = None) -> Any:
        return self.request("GET", path, params=params)

    def post(self, path: str, data: Optional[dict] = None) -> Any:
        return self.request("POST", path, data=data)

    # ── Tasks ────────────────────────────────────────────────────

    def post_task(
        self,
        path: str,
        data: Optional[dict] = None,
        cancel: Optional[threading.Event] = None,
        method: str = "POST",
    ) -> dict[str, Any]:
        """Start a long-running operation and block until its task stops."""
        upid = self.request(method, path, data=data)
        if not isinstance(upid, str) or not upid.startswith("UPID:"):
            raise ProxmoxAPIError(0, f"expected a task id from {path}, got {upid!r}")
        return self.wait_for_task(upid, cancel=cancel)

    def get_task_status(self, upid: str) -> dict[str, Any]:
        node = node_from_upid(upid)
        return self.get(f"/nodes/{node}/tasks/{quote(upid, safe='')}/status") or {}

    def get_task_log(self, upid: str, limit: int = 50) -> list[str]:
        node = node_from_upid(upid)
        lines = self.get(f"/nodes/{node}/tasks/{quote(upid, safe='')}/log", params={"limit": limit}) or []
        return [entry.get("t", "") for entry in lines]

    def wait_for_task(
        self,
        upid: str,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> dict[str, Any]:
        """Poll a task until it stops.

        Raises:
            TaskFailedError: If the task exit status is not OK
            TimeoutError: If the task is still running after `timeout`
            BuildCancelled: If `cancel` is set while waiting
        """
        timeout = timeout or self.timeout
        start = time.time()
        while True:
            status = self.get_task_status(upid)
            if status.get("status") == "stopped":
                exitstatus = status.get("exitstatus") or ""
                if exitstatus == "OK" or exitstatus.startswith("WARNINGS"):
                    return status
                try:
                    log_tail = self.get_task_log(upid)[-5:]
                except Exception as e:
                    logger.debug(f"Could not read log of task {upid}: {e}")
                    log_tail = []
                raise TaskFailedError(upid, exitstatus, log_tail)

            elapsed = time.time() - start
            if elapsed > timeout:
                raise TimeoutError(f"Task {upid} not finished after {timeout:.0f}s")
            if cancel is not None:
                if cancel.wait(self.poll_interval):
                    raise BuildCancelled()
            else:
                time.sleep(self.poll_interval)

    # ── Cluster / storage ────────────────────────────────────────

    def get_next_vmid(self) -> int:
        return int(self.get("/cluster/nextid"))

    def get_storage(self, storage: str) -> dict[str, Any]:
        """Cluster-wide storage definition (type, path, content...)."""
        return self.get(f"/storage/{quote(storage, safe='')}") or {}

    # ── LXC lifecycle ────────────────────────────────────────────

    def create_lxc(self, node: str, params: dict[str, Any]) -> tuple[VmRef, str]:
        """Submit a container create; returns the ref and the task to await.

        Not blocking, so callers can record the ref before the task finishes
        and remove a half-created container if it fails.
        """
        vmid = int(params["vmid"])
        logger.info(f"Creating LXC container {vmid} on node {node}")
        upid = self.post(f"/nodes/{node}/lxc", data=params)
        return VmRef(vmid=vmid, node=node), upid

    def start_lxc(self, ref: VmRef, cancel: Optional[threading.Event] = None) -> dict[str, Any]:
        return self.post_task(f"{ref.path}/status/start", cancel=cancel)

    def shutdown_lxc(self, ref: VmRef, cancel: Optional[threading.Event] = None) -> dict[str, Any]:
        """Graceful shutdown; falls back to a hard stop on the PVE side after its timeout."""
        return self.post_task(
            f"{ref.path}/status/shutdown", data={"forceStop": 1}, cancel=cancel,
        )

    def stop_lxc(self, ref: VmRef, cancel: Optional[threading.Event] = None) -> dict[str, Any]:
        return self.post_task(f"{ref.path}/status/stop", cancel=cancel)

    def delete_lxc(self, ref: VmRef, cancel: Optional[threading.Event] = None) -> dict[str, Any]:
        return self.post_task(ref.path, cancel=cancel, method="DELETE")

    def get_lxc_interfaces(self, ref: VmRef) -> list[dict[str, Any]]:
        """Network interfaces reported by the running container."""
        return self.get(f"{ref.path}/interfaces") or []

    # ── Backups ──────────────────────────────────────────────────

    def vzdump(self, node: str, params: dict[str, Any]) -> str:
        """Submit a node-scoped vzdump; returns the task id to await."""
        return self.post(f"/nodes/{node}/vzdump", data=params)
