"""End-to-end builds against in-memory Proxmox and node doubles.

Covers:
  - Happy path: create, connect, convert, download, delete
  - Failure during shutdown unwinds through cleanup
  - Missing backup archive
  - Cancellation during provisioning
  - Configuration rejected before anything runs
  - VMID allocation when none is configured
  - Half-created container removal
"""

from pathlib import Path

import pytest

from pvelxcbuild.tests.fakes import (
    DUMP_DIR,
    PASSWORD,
    FakeCommunicatorFactory,
    FakeNodeFactory,
    FakeProxmoxClient,
)

ARCHIVE_9000 = f"{DUMP_DIR}/vzdump-lxc-9000-2024_05_01-10_00_00.tar.gz"


def make_builder(raw, client, files):
    from pvelxcbuild.builder import Builder

    builder = Builder(
        client_factory=lambda *args, **kwargs: client,
        node_factory=FakeNodeFactory(files),
        communicator_factory=FakeCommunicatorFactory(),
    )
    builder.prepare(raw)
    return builder


# ═══════════════════════════════════════════════════════════════════
#  Successful builds
# ═══════════════════════════════════════════════════════════════════

class TestHappyPath:
    def test_template_downloaded_and_container_removed(self, raw_config, ui):
        client = FakeProxmoxClient()
        files = {ARCHIVE_9000: b"\x1f\x8b" + bytes(1022)}
        builder = make_builder(raw_config, client, files)

        artifact = builder.run(ui=ui)

        out = Path(raw_config["output_path"])
        assert out.stat().st_size == 1024
        assert artifact.files() == [str(out)]
        assert artifact.id() == str(out)
        assert artifact.builder_id == "proxmox.builder"
        assert client.called("shutdown_lxc") == [("shutdown_lxc", 9000)]
        assert client.called("delete_lxc") == [("delete_lxc", 9000)]
        assert client.called("stop_lxc") == []
        assert builder.state.container_deleted
        assert ui.errors == []

    def test_vzdump_parameters(self, raw_config, ui):
        client = FakeProxmoxClient()
        builder = make_builder(raw_config, client, {ARCHIVE_9000: bytes(64)})
        builder.run(ui=ui)

        (_, params), = client.called("vzdump")
        assert params == {
            "mode": "stop",
            "compress": "gzip",
            "remove": "1",
            "storage": "local",
            "vmid": "9000",
        }
        assert any("remove=1" in w for w in ui.warnings)

    def test_steps_reached_in_order(self, raw_config, ui):
        builder = make_builder(raw_config, FakeProxmoxClient(), {ARCHIVE_9000: bytes(64)})
        builder.run(ui=ui)
        assert builder.state.reached == [
            "create_container",
            "http_server",
            "connect",
            "provision",
            "cleanup_temp_keys",
            "convert_to_template",
        ]

    def test_generated_data_on_artifact(self, raw_config, ui):
        builder = make_builder(raw_config, FakeProxmoxClient(), {ARCHIVE_9000: bytes(64)})
        artifact = builder.run(ui=ui)
        data = artifact.state("generated_data")
        assert data["ID"] == 9000
        assert data["Host"] == "10.0.0.50"
        assert data["Port"] == 22

    def test_node_connection_uses_api_host_and_pam_user(self, raw_config, ui):
        client = FakeProxmoxClient()
        builder = make_builder(raw_config, client, {ARCHIVE_9000: bytes(64)})
        builder.run(ui=ui)

        node = builder.node_factory.instances[0]
        assert node.host == "pve1.example.com"
        assert node.username == "root"
        assert node.port == 22

    def test_communicator_closed_after_build(self, raw_config, ui):
        builder = make_builder(raw_config, FakeProxmoxClient(), {ARCHIVE_9000: bytes(64)})
        builder.run(ui=ui)
        comm = builder.communicator_factory.instances[0]
        assert comm.connected
        assert comm.closed
        assert comm.kwargs["host"] == "10.0.0.50"

    def test_provision_hook_receives_communicator(self, raw_config, ui):
        seen = {}

        class Hook:
            def run(self, name, ui, communicator, data, cancel=None):
                seen["name"] = name
                seen["communicator"] = communicator
                seen["id"] = data["ID"]
                return {"ProvisionersRun": 2}

        builder = make_builder(raw_config, FakeProxmoxClient(), {ARCHIVE_9000: bytes(64)})
        artifact = builder.run(ui=ui, hook=Hook())

        assert seen["name"] == "provision"
        assert seen["communicator"] is builder.communicator_factory.instances[0]
        assert seen["id"] == 9000
        assert artifact.state("generated_data")["ProvisionersRun"] == 2


# ═══════════════════════════════════════════════════════════════════
#  Failures and cleanup
# ═══════════════════════════════════════════════════════════════════

class TestFailures:
    def test_shutdown_failure_unwinds(self, raw_config, ui):
        from pvelxcbuild.errors import ProxmoxAPIError

        client = FakeProxmoxClient()
        client.failures["shutdown_lxc"] = ProxmoxAPIError(500, "CT 9000 is locked (backup)")
        builder = make_builder(raw_config, client, {ARCHIVE_9000: bytes(1024)})

        with pytest.raises(RuntimeError, match="Error converting VM to template, could not stop"):
            builder.run(ui=ui)

        assert not Path(raw_config["output_path"]).exists()
        assert client.called("stop_lxc") == [("stop_lxc", 9000)]
        assert client.called("delete_lxc") == [("delete_lxc", 9000)]
        assert client.called("vzdump") == []
        assert builder.state.container_deleted
        assert any("could not stop" in e for e in ui.errors)

    def test_missing_backup_archive(self, raw_config, ui):
        client = FakeProxmoxClient()
        files = {f"{DUMP_DIR}/vzdump-lxc-9001-2024_05_01-10_00_00.tar.gz": bytes(1024)}
        builder = make_builder(raw_config, client, files)

        with pytest.raises(RuntimeError, match="could not find backup file for LXC container 9000"):
            builder.run(ui=ui)

        assert not Path(raw_config["output_path"]).exists()
        assert client.called("delete_lxc") == [("delete_lxc", 9000)]
        assert builder.state.container_deleted

    def test_dropped_node_connection_during_transfer(self, raw_config, ui):
        import paramiko

        from pvelxcbuild.builder import Builder

        client = FakeProxmoxClient()
        builder = Builder(
            client_factory=lambda *args, **kwargs: client,
            node_factory=FakeNodeFactory(
                {ARCHIVE_9000: bytes(1024)},
                transfer_error=paramiko.SSHException("Server connection dropped: "),
            ),
            communicator_factory=FakeCommunicatorFactory(),
        )
        builder.prepare(raw_config)

        with pytest.raises(RuntimeError, match="failed to download backup"):
            builder.run(ui=ui)

        assert builder.state.error is not None
        assert any("Server connection dropped" in e for e in ui.errors)
        assert not Path(raw_config["output_path"]).exists()
        assert client.called("delete_lxc") == [("delete_lxc", 9000)]
        assert builder.state.container_deleted

    def test_backup_task_failure(self, raw_config, ui):
        from pvelxcbuild.errors import ProxmoxAPIError

        client = FakeProxmoxClient()
        client.failures["vzdump"] = ProxmoxAPIError(500, "storage 'local' is not online")
        builder = make_builder(raw_config, client, {})

        with pytest.raises(RuntimeError, match="failed to create backup"):
            builder.run(ui=ui)
        assert client.called("delete_lxc") == [("delete_lxc", 9000)]

    def test_delete_failure_after_download_is_reported_only(self, raw_config, ui):
        from pvelxcbuild.errors import ProxmoxAPIError

        client = FakeProxmoxClient()
        client.failures["delete_lxc"] = ProxmoxAPIError(500, "CT is locked")
        builder = make_builder(raw_config, client, {ARCHIVE_9000: bytes(32)})

        artifact = builder.run(ui=ui)

        assert Path(artifact.id()).exists()
        assert any("Please delete it manually" in e for e in ui.errors)
        # No retry from cleanup when the build succeeded
        assert len(client.called("delete_lxc")) == 1

    def test_half_created_container_removed(self, raw_config, ui):
        from pvelxcbuild.errors import TaskFailedError

        client = FakeProxmoxClient()
        client.failures["start_lxc"] = TaskFailedError("UPID:pve1:0000A1B2:start", "startup for container '9000' failed")
        builder = make_builder(raw_config, client, {})

        with pytest.raises(RuntimeError, match="Error creating container"):
            builder.run(ui=ui)

        assert builder.state.reached == ["create_container"]
        assert client.called("delete_lxc") == [("delete_lxc", 9000)]
        assert builder.node_factory.instances == []

    def test_already_removed_container_is_not_an_error(self, raw_config, ui):
        from pvelxcbuild.errors import ProxmoxAPIError

        client = FakeProxmoxClient()
        client.failures["shutdown_lxc"] = ProxmoxAPIError(500, "shutdown failed")
        client.failures["delete_lxc"] = ProxmoxAPIError(
            500, "Configuration file 'nodes/pve1/lxc/9000.conf' does not exist"
        )
        builder = make_builder(raw_config, client, {})

        with pytest.raises(RuntimeError):
            builder.run(ui=ui)

        assert builder.state.container_deleted
        assert not any("delete it manually" in e for e in ui.errors)

    def test_password_redacted_from_errors(self, raw_config, ui):
        from pvelxcbuild.errors import ProxmoxAPIError

        client = FakeProxmoxClient()
        client.failures["shutdown_lxc"] = ProxmoxAPIError(500, f"bad ticket for password {PASSWORD}")
        builder = make_builder(raw_config, client, {})

        with pytest.raises(RuntimeError):
            builder.run(ui=ui)

        assert ui.errors
        assert all(PASSWORD not in text for _, text in ui.lines)
        assert any("<sensitive>" in e for e in ui.errors)


# ═══════════════════════════════════════════════════════════════════
#  Cancellation
# ═══════════════════════════════════════════════════════════════════

class TestCancellation:
    def test_cancel_during_provisioning(self, raw_config, ui):
        import threading

        from pvelxcbuild.errors import BuildCancelled

        class CancellingHook:
            def run(self, name, ui, communicator, data, cancel=None):
                cancel.set()
                raise BuildCancelled()

        client = FakeProxmoxClient()
        builder = make_builder(raw_config, client, {ARCHIVE_9000: bytes(1024)})

        with pytest.raises(BuildCancelled, match="build was cancelled"):
            builder.run(cancel=threading.Event(), ui=ui, hook=CancellingHook())

        state = builder.state
        assert state.cancelled
        assert state.error is None
        assert client.called("stop_lxc") == [("stop_lxc", 9000)]
        assert client.called("delete_lxc") == [("delete_lxc", 9000)]
        assert client.called("vzdump") == []
        assert not Path(raw_config["output_path"]).exists()
        assert builder.communicator_factory.instances[0].closed

    def test_cancel_before_start(self, raw_config, ui):
        import threading

        from pvelxcbuild.errors import BuildCancelled

        cancel = threading.Event()
        cancel.set()
        client = FakeProxmoxClient()
        builder = make_builder(raw_config, client, {})

        with pytest.raises(BuildCancelled):
            builder.run(cancel=cancel, ui=ui)
        assert client.called("create_lxc") == []
        assert builder.state.reached == []


# ═══════════════════════════════════════════════════════════════════
#  Prepare and VMID allocation
# ═══════════════════════════════════════════════════════════════════

class TestPrepareAndAllocation:
    def test_missing_node_rejected(self, raw_config):
        from pvelxcbuild.builder import Builder
        from pvelxcbuild.errors import ConfigError

        del raw_config["node"]
        with pytest.raises(ConfigError) as exc:
            Builder().prepare(raw_config)
        assert "node must be specified" in exc.value.errors

    def test_run_requires_prepare(self):
        from pvelxcbuild.builder import Builder

        with pytest.raises(RuntimeError, match="prepare"):
            Builder().run()

    def test_vmid_allocated_from_cluster(self, raw_config, ui):
        del raw_config["vmid"]
        client = FakeProxmoxClient(next_vmid=9100)
        files = {
            ARCHIVE_9000: bytes(10),
            f"{DUMP_DIR}/vzdump-lxc-9100-2024_05_01-11_00_00.tar.gz": bytes(700),
        }
        builder = make_builder(raw_config, client, files)

        artifact = builder.run(ui=ui)

        assert client.called("get_next_vmid")
        assert client.created_params["vmid"] == 9100
        (_, params), = client.called("vzdump")
        assert params["vmid"] == "9100"
        assert Path(artifact.id()).stat().st_size == 700
        assert client.called("delete_lxc") == [("delete_lxc", 9100)]
