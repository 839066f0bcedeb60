"""Tests for locating and fetching vzdump archives from the node."""

import threading

import pytest

from pvelxcbuild.tests.fakes import DUMP_DIR, FakeSFTP


def connected_node(files, truncate=False, transfer_error=None):
    from pvelxcbuild.proxmox.node import NodeSFTP

    node = NodeSFTP(host="pve1.example.com", username="root", password="pw")
    node._sftp = FakeSFTP(files, truncate=truncate, transfer_error=transfer_error)
    return node


# ═══════════════════════════════════════════════════════════════════
#  Archive selection
# ═══════════════════════════════════════════════════════════════════

class TestSelectBackup:
    def test_last_match_wins(self):
        from pvelxcbuild.proxmox.node import select_backup

        names = [
            "vzdump-lxc-9000-2024_05_01-10_00_00.tar.gz",
            "vzdump-lxc-9000-2024_05_01-10_00_00.log",
            "vzdump-lxc-9000-2024_05_02-10_00_00.tar.gz",
            "vzdump-qemu-9000-2024_05_03-10_00_00.vma.zst",
        ]
        assert select_backup(names, 9000) == "vzdump-lxc-9000-2024_05_02-10_00_00.tar.gz"

    def test_other_vmid_ignored(self):
        from pvelxcbuild.proxmox.node import select_backup

        assert select_backup(["vzdump-lxc-9001-2024_05_01-10_00_00.tar.gz"], 9000) is None

    def test_empty_listing(self):
        from pvelxcbuild.proxmox.node import select_backup

        assert select_backup([], 9000) is None

    def test_dump_dir_from_storage(self):
        from pvelxcbuild.proxmox.node import dump_dir_for_storage

        assert dump_dir_for_storage({"storage": "local", "type": "dir", "path": "/var/lib/vz"}) == DUMP_DIR
        assert dump_dir_for_storage({"storage": "nfs", "type": "nfs", "path": "/mnt/pve/nfs"}) == "/mnt/pve/nfs/dump"

    def test_dump_dir_requires_path(self):
        from pvelxcbuild.errors import ArtifactTransportError
        from pvelxcbuild.proxmox.node import dump_dir_for_storage

        with pytest.raises(ArtifactTransportError, match="backup_dump_dir"):
            dump_dir_for_storage({"storage": "pbs", "type": "pbs"})


# ═══════════════════════════════════════════════════════════════════
#  Transfer
# ═══════════════════════════════════════════════════════════════════

class TestDownload:
    REMOTE = f"{DUMP_DIR}/vzdump-lxc-9000-2024_05_01-10_00_00.tar.gz"

    def test_download_writes_file(self, tmp_path):
        node = connected_node({self.REMOTE: bytes(range(256)) * 4})
        dest = tmp_path / "nested" / "template.tar.gz"

        size = node.download(self.REMOTE, dest)

        assert size == 1024
        assert dest.read_bytes() == bytes(range(256)) * 4
        assert [p.name for p in dest.parent.iterdir()] == ["template.tar.gz"]

    def test_existing_file_replaced(self, tmp_path):
        dest = tmp_path / "template.tar.gz"
        dest.write_bytes(b"stale")
        node = connected_node({self.REMOTE: b"fresh" * 100})

        node.download(self.REMOTE, dest)
        assert dest.read_bytes() == b"fresh" * 100

    def test_truncated_transfer_discarded(self, tmp_path):
        from pvelxcbuild.errors import ArtifactTransportError

        node = connected_node({self.REMOTE: bytes(1024)}, truncate=True)
        dest = tmp_path / "template.tar.gz"

        with pytest.raises(ArtifactTransportError, match="truncated"):
            node.download(self.REMOTE, dest)
        assert list(tmp_path.iterdir()) == []

    def test_cancel_discards_partial_file(self, tmp_path):
        from pvelxcbuild.errors import BuildCancelled

        cancel = threading.Event()
        cancel.set()
        node = connected_node({self.REMOTE: bytes(1024)})

        with pytest.raises(BuildCancelled):
            node.download(self.REMOTE, tmp_path / "template.tar.gz", cancel=cancel)
        assert list(tmp_path.iterdir()) == []

    def test_dropped_connection_discards_partial_file(self, tmp_path):
        import paramiko

        from pvelxcbuild.errors import ArtifactTransportError

        node = connected_node(
            {self.REMOTE: bytes(1024)},
            transfer_error=paramiko.SSHException("Server connection dropped: "),
        )

        with pytest.raises(ArtifactTransportError, match="Server connection dropped"):
            node.download(self.REMOTE, tmp_path / "template.tar.gz")
        assert list(tmp_path.iterdir()) == []

    def test_missing_remote_file(self, tmp_path):
        from pvelxcbuild.errors import ArtifactTransportError

        node = connected_node({})
        with pytest.raises(ArtifactTransportError, match="could not stat"):
            node.download(self.REMOTE, tmp_path / "template.tar.gz")

    def test_listing_on_dropped_connection(self):
        from unittest.mock import MagicMock

        import paramiko

        from pvelxcbuild.errors import ArtifactTransportError

        node = connected_node({})
        node._sftp = MagicMock()
        node._sftp.listdir.side_effect = paramiko.SSHException("Server connection dropped: ")
        with pytest.raises(ArtifactTransportError, match="could not list"):
            node.list_dir(DUMP_DIR)

    def test_list_missing_directory(self):
        from pvelxcbuild.errors import ArtifactTransportError

        node = connected_node({self.REMOTE: b""})
        assert node.list_dir(DUMP_DIR) == ["vzdump-lxc-9000-2024_05_01-10_00_00.tar.gz"]
        with pytest.raises(ArtifactTransportError, match="could not list"):
            node.list_dir("/mnt/pve/missing/dump")

    def test_requires_connection(self):
        from pvelxcbuild.proxmox.node import NodeSFTP

        node = NodeSFTP(host="pve1", username="root", password="pw")
        with pytest.raises(ConnectionError):
            node.sftp

    def test_close_releases_session(self):
        node = connected_node({})
        sftp = node._sftp
        node.close()
        assert sftp.closed
        assert node._sftp is None


# ═══════════════════════════════════════════════════════════════════
#  Host key handling
# ═══════════════════════════════════════════════════════════════════

class TestHostKeys:
    def test_invalid_pinned_key_rejected(self):
        import paramiko

        from pvelxcbuild.errors import ArtifactTransportError
        from pvelxcbuild.proxmox.node import NodeSFTP

        node = NodeSFTP(host="pve1", username="root", password="pw", host_key="ssh-ed25519 notbase64")
        with pytest.raises(ArtifactTransportError, match="node_ssh_host_key"):
            node._load_host_keys(paramiko.SSHClient())

    def test_insecure_accepts_unknown_keys(self):
        import paramiko

        from pvelxcbuild.proxmox.node import NodeSFTP

        ssh = paramiko.SSHClient()
        NodeSFTP(host="pve1", username="root", password="pw", insecure_skip_host_key=True)._load_host_keys(ssh)
        assert isinstance(ssh._policy, paramiko.AutoAddPolicy)

    def test_strict_by_default(self):
        import paramiko

        from pvelxcbuild.proxmox.node import NodeSFTP

        ssh = paramiko.SSHClient()
        ssh.load_system_host_keys = lambda: None
        NodeSFTP(host="pve1", username="root", password="pw")._load_host_keys(ssh)
        assert isinstance(ssh._policy, paramiko.RejectPolicy)
