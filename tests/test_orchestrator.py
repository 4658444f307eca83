"""End-to-end orchestrator tests against a dry-run command executor."""

import os

import pytest

from raidmount.block_devices import BlockDeviceManager
from raidmount.config_manager import RaidMountConfig
from raidmount.errors import MountpointConflict, ProvisionError, RejectReason, ValidationError
from raidmount.models import OrchestratorState
from raidmount.orchestrator import EXIT_FAILURE, EXIT_SUCCESS, Orchestrator
from raidmount.provisioner import ResourceProvisioner
from raidmount.system_executor import SystemCommandExecutor


@pytest.fixture
def images(tmp_path):
    paths = []
    for number in range(1, 5):
        image = tmp_path / f"disk{number}.img"
        image.write_bytes(b"\0" * 1024)
        paths.append(str(image))
    return paths


@pytest.fixture
def executor():
    return SystemCommandExecutor(dry_run=True)


@pytest.fixture
def config(tmp_path):
    return RaidMountConfig(cleanup_script_dir=str(tmp_path / "scripts"))


@pytest.fixture
def orchestrator(tmp_path, executor, config):
    dev_root = tmp_path / "dev"
    sys_block_root = tmp_path / "sys_block"
    dev_root.mkdir()
    sys_block_root.mkdir()
    block_devices = BlockDeviceManager(executor, str(dev_root), str(sys_block_root))
    return Orchestrator(config, provisioner=ResourceProvisioner.from_config(config, block_devices))


def executed(executor):
    return [entry['command'] for entry in executor.get_command_history()]


class TestSuccessfulRun:

    def test_degraded_raid5(self, orchestrator, executor, images, tmp_path, capsys):
        mount_dir = str(tmp_path / "mnt")

        code = orchestrator.run("5", [images[0], "missing", images[2]], mount_dir)

        assert code == EXIT_SUCCESS
        assert orchestrator.state is OrchestratorState.FINALIZED
        assert orchestrator.array.degraded
        assert orchestrator.array.member_devices == ['/dev/loop0', None, '/dev/loop1']

        commands = executed(executor)
        assert commands[0] == f"mkdir {mount_dir}"
        assert any(c.startswith("mdadm --create /dev/md0 --run --level=5 --raid-devices=3") and
                   c.endswith("/dev/loop0 missing /dev/loop1") for c in commands)
        assert commands[-1] == f"mount /dev/md0 {mount_dir}"

        out = capsys.readouterr().out
        assert f"Mounted /dev/md0 (raid5, 3 slots, degraded) at {mount_dir}" in out
        assert "Teardown:" in out

    def test_teardown_script_written(self, orchestrator, config, images, tmp_path):
        mount_dir = str(tmp_path / "mnt")

        orchestrator.run("1", images[:2], mount_dir)

        expected = os.path.join(config.cleanup_script_dir, "raidmount-teardown-md0.sh")
        assert str(orchestrator.script_path) == os.path.realpath(expected)
        assert os.access(orchestrator.script_path, os.X_OK)

        lines = orchestrator.script_path.read_text().splitlines()
        commands = [line for line in lines if line and not line.startswith('#')]
        assert commands[0].startswith(f"umount {mount_dir} ||")
        assert commands[1].startswith("mdadm --stop /dev/md0 ||")
        assert commands[2].startswith("losetup --detach /dev/loop1 ||")
        assert commands[3].startswith("losetup --detach /dev/loop0 ||")
        assert commands[4].startswith(f"rmdir {mount_dir} ||")
        assert commands[5] == 'rm -f -- "$0"'
        assert orchestrator.ledger.consumed

    def test_explicit_script_path(self, orchestrator, images, tmp_path):
        script = tmp_path / "custom" / "down.sh"

        code = orchestrator.run("0", images[:2], str(tmp_path / "mnt"), cleanup_script=str(script))

        assert code == EXIT_SUCCESS
        assert script.exists()

    def test_no_cleanup_performed_on_success(self, orchestrator, executor, images, tmp_path):
        orchestrator.run("10", images, str(tmp_path / "mnt"))

        commands = executed(executor)
        assert not any(c.startswith(("umount", "mdadm --stop", "losetup --detach", "rmdir"))
                       for c in commands)

    def test_dry_run_prints_script(self, config, images, tmp_path, capsys):
        orchestrator = Orchestrator(config, dry_run=True)

        code = orchestrator.run("1", [images[0], "missing"], str(tmp_path / "mnt"))

        assert code == EXIT_SUCCESS
        assert orchestrator.script_path is None
        assert not os.path.exists(config.cleanup_script_dir)
        out = capsys.readouterr().out
        assert out.startswith("#!/bin/sh\n")
        assert "(raid1, 2 slots, degraded)" in out


class TestFailedRun:

    def test_validation_rejection(self, orchestrator, executor, images, tmp_path):
        code = orchestrator.run("5", [images[0], "missing", "missing"], str(tmp_path / "mnt"))

        assert code == EXIT_FAILURE
        assert orchestrator.state is OrchestratorState.FAILED
        assert isinstance(orchestrator.error, ValidationError)
        assert orchestrator.error.reason is RejectReason.EXCESSIVE_FAULT_COUNT
        assert executed(executor) == []
        assert orchestrator.ledger is None

    def test_unsupported_level(self, orchestrator, images, tmp_path):
        code = orchestrator.run("3", images[:3], str(tmp_path / "mnt"))

        assert code == EXIT_FAILURE
        assert orchestrator.error.reason is RejectReason.UNSUPPORTED_LEVEL

    def test_missing_image_file(self, orchestrator, images, tmp_path):
        code = orchestrator.run("1", [images[0], str(tmp_path / "ghost.img")], str(tmp_path / "mnt"))

        assert code == EXIT_FAILURE
        assert orchestrator.error.reason is RejectReason.INVALID_DISK_FILE
        assert orchestrator.error.detail['slots'] == [2]

    def test_empty_disk_argument(self, orchestrator, executor, images, tmp_path):
        code = orchestrator.run("1", [images[0], ""], str(tmp_path / "mnt"))

        assert code == EXIT_FAILURE
        assert orchestrator.state is OrchestratorState.FAILED
        assert isinstance(orchestrator.error, ValidationError)
        assert orchestrator.error.reason is RejectReason.INVALID_DISK_FILE
        assert orchestrator.error.detail['slots'] == [2]
        assert executed(executor) == []

    @pytest.mark.parametrize("mount_dir", ["", "   "])
    def test_empty_mount_dir(self, orchestrator, executor, images, mount_dir):
        code = orchestrator.run("1", images[:2], mount_dir)

        assert code == EXIT_FAILURE
        assert orchestrator.state is OrchestratorState.FAILED
        assert "Mount directory" in orchestrator.error.message
        assert executed(executor) == []

    def test_mountpoint_conflict(self, orchestrator, executor, images, tmp_path):
        target = tmp_path / "occupied"
        target.write_text("not a directory")

        code = orchestrator.run("1", images[:2], str(target))

        assert code == EXIT_FAILURE
        assert isinstance(orchestrator.error, MountpointConflict)
        assert executed(executor) == []

    def test_script_write_failure_unwinds(self, orchestrator, executor, images, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("x")
        mount_dir = str(tmp_path / "mnt")

        code = orchestrator.run("1", images[:2], mount_dir, cleanup_script=str(blocker / "down.sh"))

        assert code == EXIT_FAILURE
        assert isinstance(orchestrator.error, ProvisionError)
        assert orchestrator.error.rollback_failures == []
        commands = executed(executor)
        assert commands[-5:] == [
            f"umount {mount_dir}",
            "mdadm --stop /dev/md0",
            "losetup --detach /dev/loop1",
            "losetup --detach /dev/loop0",
            f"rmdir {mount_dir}",
        ]

    def test_single_use(self, orchestrator, images, tmp_path):
        orchestrator.run("1", images[:2], str(tmp_path / "mnt"))

        with pytest.raises(RuntimeError):
            orchestrator.run("1", images[:2], str(tmp_path / "mnt"))
