"""Transactional acquisition of the resources behind a RAID mount."""

import os
import logging
from functools import partial
from typing import List, Optional, Tuple

from .block_devices import BlockDeviceManager
from .config_manager import RaidMountConfig
from .errors import MountpointConflict, ProvisionError
from .models import DiskSlot, ProvisionedArray, RaidLevel, RaidRequest
from .rollback import RollbackLedger

logger = logging.getLogger(__name__)


class ResourceProvisioner:
    """
    Acquires the mount directory, loop devices, md array and mount in order.

    Every acquired resource registers one rollback step in the ledger. If any
    step fails, the ledger is unwound before the error propagates, so callers
    never see a partially provisioned array.
    """

    def __init__(self,
                 block_devices: Optional[BlockDeviceManager] = None,
                 read_only: bool = False,
                 filesystem_type: Optional[str] = None,
                 mount_options: Optional[List[str]] = None,
                 metadata_version: Optional[str] = None,
                 chunk_size_kb: Optional[int] = None,
                 assume_clean: bool = True,
                 max_array_devices: int = 128):
        self._block_devices = block_devices or BlockDeviceManager()
        self.read_only = read_only
        self.filesystem_type = filesystem_type
        self.mount_options = list(mount_options or [])
        self.metadata_version = metadata_version
        self.chunk_size_kb = chunk_size_kb
        self.assume_clean = assume_clean
        self.max_array_devices = max_array_devices

    @classmethod
    def from_config(cls, config: RaidMountConfig,
                    block_devices: Optional[BlockDeviceManager] = None) -> "ResourceProvisioner":
        return cls(
            block_devices=block_devices,
            read_only=config.read_only,
            filesystem_type=config.filesystem_type,
            mount_options=config.mount_options,
            metadata_version=config.metadata_version,
            chunk_size_kb=config.chunk_size_kb,
            assume_clean=config.assume_clean,
            max_array_devices=config.max_array_devices,
        )

    def provision(self, request: RaidRequest, ledger: RollbackLedger) -> ProvisionedArray:
        """
        Provision a validated request.

        Args:
            request: Accepted RAID request
            ledger: Ledger receiving one rollback step per acquired resource

        Returns:
            ProvisionedArray for the mounted array

        Raises:
            ProvisionError: After every registered rollback step has been run
        """
        try:
            self._prepare_mountpoint(request.mount_dir, ledger)
            slots = self._attach_disks(request.slots, ledger)
            array_device = self._assemble(request.level, slots, ledger)
            self._mount(array_device, request.mount_dir, ledger)
        except ProvisionError as e:
            self._unwind(ledger, e)
            raise
        except KeyboardInterrupt:
            error = ProvisionError("Provisioning interrupted")
            self._unwind(ledger, error)
            raise error
        except Exception as e:
            error = ProvisionError(f"Unexpected error during provisioning: {e}")
            self._unwind(ledger, error)
            raise error from e

        return ProvisionedArray(
            array_device=array_device,
            mount_dir=request.mount_dir,
            level=request.level,
            slots=slots,
            size_bytes=self._block_devices.filesystem_size(request.mount_dir),
        )

    def _prepare_mountpoint(self, mount_dir: str, ledger: RollbackLedger) -> None:
        if os.path.lexists(mount_dir) and not os.path.isdir(mount_dir):
            raise MountpointConflict(
                f"Mount target {mount_dir} exists and is not a directory",
                state={'path': mount_dir}
            )

        if os.path.isdir(mount_dir):
            if self._block_devices.is_mount_point(mount_dir):
                raise MountpointConflict(
                    f"Mount target {mount_dir} is already a mount point",
                    state={'path': mount_dir}
                )
            logger.info(f"Using existing mount directory {mount_dir}")
            return

        # Teardown argv is validated before the resource is acquired
        command = self._block_devices.remove_directory_command(mount_dir)
        self._block_devices.make_directory(mount_dir)
        ledger.register(
            f"remove directory {mount_dir}",
            command,
            partial(self._block_devices.remove_directory, mount_dir),
        )
        logger.info(f"Created mount directory {mount_dir}", extra={'step': 'mountpoint'})

    def _attach_disks(self, slots: Tuple[DiskSlot, ...], ledger: RollbackLedger) -> List[DiskSlot]:
        attached = []
        for slot in slots:
            if slot.is_absent:
                logger.info(f"Slot {slot.index} is absent, array will be degraded")
                attached.append(slot)
                continue

            existing = self._block_devices.find_attached_loop(slot.source)
            if existing:
                logger.info(f"Slot {slot.index} {slot.source} already attached at {existing}, reusing")
                attached.append(slot.with_device(existing))
                continue

            device = self._block_devices.attach(slot.source, slot.index, read_only=self.read_only)
            ledger.register(
                f"detach {device}",
                self._block_devices.detach_command(device),
                partial(self._block_devices.detach, device),
            )
            attached.append(slot.with_device(device))
        return attached

    def _assemble(self, level: RaidLevel, slots: List[DiskSlot], ledger: RollbackLedger) -> str:
        array_device = self._block_devices.find_free_array_device(self.max_array_devices)
        command = self._block_devices.stop_array_command(array_device)
        self._block_devices.create_array(
            array_device,
            level,
            [slot.device for slot in slots],
            metadata=self.metadata_version,
            chunk_size_kb=self.chunk_size_kb,
            assume_clean=self.assume_clean,
        )
        ledger.register(
            f"stop array {array_device}",
            command,
            partial(self._block_devices.stop_array, array_device),
        )
        return array_device

    def _mount(self, array_device: str, mount_dir: str, ledger: RollbackLedger) -> None:
        options = list(self.mount_options)
        if self.read_only and 'ro' not in options:
            options.append('ro')

        command = self._block_devices.unmount_command(mount_dir)
        self._block_devices.mount(array_device, mount_dir, self.filesystem_type, options)
        ledger.register(
            f"unmount {mount_dir}",
            command,
            partial(self._block_devices.unmount, mount_dir),
        )

    def _unwind(self, ledger: RollbackLedger, error: ProvisionError) -> None:
        logger.error(f"Provisioning failed at step '{error.step}': {error.message}",
                     extra={'step': error.step})
        failures = ledger.unwind()
        error.state['rollback_failures'] = failures
        if failures:
            logger.error(f"{len(failures)} rollback step(s) failed; manual cleanup may be needed")
