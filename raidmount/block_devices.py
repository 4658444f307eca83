"""Loop device, md array and mount operations built on the command executor."""

import os
import logging
from typing import List, Optional

import psutil

from .errors import AssemblyFailure, AttachmentFailure, MountFailure, MountpointConflict
from .models import RaidLevel
from .system_executor import CommandType, SystemCommandExecutor

logger = logging.getLogger(__name__)


class BlockDeviceManager:
    """Acquires and releases loop devices, md arrays, mounts and mount directories."""

    ABSENT_MEMBER = 'missing'

    def __init__(self, system_executor: Optional[SystemCommandExecutor] = None,
                 dev_root: str = '/dev', sys_block_root: str = '/sys/block'):
        """
        Initialize the block device manager.

        Args:
            system_executor: System command executor for privileged operations
            dev_root: Directory holding device nodes, scanned for free md devices
            sys_block_root: sysfs block directory, scanned for active md devices
        """
        self._system_executor = system_executor or SystemCommandExecutor()
        self._dev_root = dev_root
        self._sys_block_root = sys_block_root
        self._dry_run_loops = 0

    @property
    def dry_run(self) -> bool:
        return self._system_executor.dry_run

    # Loop devices

    def find_attached_loop(self, image_path: str) -> Optional[str]:
        """
        Return the loop device already backed by an image, if any.

        Args:
            image_path: Absolute path of the image file

        Returns:
            Loop device path, or None when the image is not attached
        """
        if self.dry_run:
            return None

        success, stdout, _ = self._system_executor.execute_losetup_command(
            ['--associated', image_path, '--noheadings', '--output', 'NAME']
        )
        if not success:
            return None

        for line in stdout.splitlines():
            device = line.strip()
            if device and self.is_loop_device(device):
                return device
        return None

    def attach(self, image_path: str, slot_index: int, read_only: bool = False) -> str:
        """
        Attach an image file to the first free loop device.

        Args:
            image_path: Absolute path of the image file
            slot_index: Ordinal of the slot, for diagnostics
            read_only: Attach the image read-only

        Returns:
            Loop device path, e.g. '/dev/loop3'

        Raises:
            AttachmentFailure: If losetup fails or reports no device
        """
        args = ['--find', '--show']
        if read_only:
            args.append('--read-only')
        args.append(image_path)

        try:
            success, stdout, stderr = self._system_executor.execute_losetup_command(args)
        except ValueError as e:
            success, stdout, stderr = False, '', str(e)

        if success and self.dry_run:
            device = f"/dev/loop{self._dry_run_loops}"
            self._dry_run_loops += 1
            return device

        device = stdout.strip().splitlines()[-1].strip() if success and stdout.strip() else ''
        if not success or not self.is_loop_device(device):
            raise AttachmentFailure(
                f"Could not attach slot {slot_index} ({image_path}) as a loop device",
                state={'slot': slot_index, 'path': image_path, 'stderr': stderr.strip()}
            )

        logger.info(f"Attached slot {slot_index} {image_path} -> {device}",
                    extra={'step': 'attach', 'device': device})
        return device

    @staticmethod
    def is_loop_device(device: str) -> bool:
        """True for loop device paths the executor accepts, e.g. /dev/loop3 or /dev/loop/3."""
        return device.startswith('/dev/loop') and \
            bool(SystemCommandExecutor.DEVICE_PATH_PATTERN.match(device))

    def detach(self, device: str) -> bool:
        success, _, _ = self._system_executor.execute_losetup_command(['--detach', device])
        return success

    def detach_command(self, device: str) -> List[str]:
        return self._system_executor.full_command(CommandType.LOSETUP, ['--detach', device])

    # md arrays

    def find_free_array_device(self, max_devices: int = 128) -> str:
        """
        Find the first md device identifier not in use.

        The identifier is not reserved; another process may claim it between
        the scan and array creation.

        Args:
            max_devices: Number of md identifiers to scan, starting at md0

        Returns:
            Device path such as '/dev/md0'

        Raises:
            AssemblyFailure: If every scanned identifier is taken
        """
        for number in range(max_devices):
            name = f"md{number}"
            if os.path.exists(os.path.join(self._dev_root, name)):
                continue
            if os.path.exists(os.path.join(self._sys_block_root, name)):
                continue
            return f"/dev/{name}"

        raise AssemblyFailure(
            f"No free md device among md0..md{max_devices - 1}",
            state={'max_devices': max_devices}
        )

    def create_array(self,
                     array_device: str,
                     level: RaidLevel,
                     members: List[Optional[str]],
                     metadata: Optional[str] = None,
                     chunk_size_kb: Optional[int] = None,
                     assume_clean: bool = True) -> None:
        """
        Create and start an md array from members in slot order.

        Args:
            array_device: md device to create
            level: RAID level
            members: Loop devices in slot order, None for absent slots
            metadata: Superblock metadata version, mdadm default when None
            chunk_size_kb: Chunk size in KiB, mdadm default when None
            assume_clean: Skip the initial resync

        Raises:
            AssemblyFailure: If mdadm fails
        """
        args = self.create_array_args(array_device, level, members, metadata, chunk_size_kb, assume_clean)
        try:
            success, _, stderr = self._system_executor.execute_mdadm_command(args)
        except ValueError as e:
            success, stderr = False, str(e)
        if not success:
            raise AssemblyFailure(
                f"mdadm could not create {level.mdadm_name} array {array_device}",
                state={'array_device': array_device, 'level': level.value, 'stderr': stderr.strip()}
            )
        logger.info(f"Created {level.mdadm_name} array {array_device} from {len(members)} slot(s)",
                    extra={'step': 'assemble', 'device': array_device})

    def create_array_args(self,
                          array_device: str,
                          level: RaidLevel,
                          members: List[Optional[str]],
                          metadata: Optional[str] = None,
                          chunk_size_kb: Optional[int] = None,
                          assume_clean: bool = True) -> List[str]:
        args = ['--create', array_device, '--run', f"--level={level.value}",
                f"--raid-devices={len(members)}"]
        if assume_clean:
            args.append('--assume-clean')
        if metadata:
            args.append(f"--metadata={metadata}")
        if chunk_size_kb:
            args.append(f"--chunk={chunk_size_kb}")
        args.extend(member or self.ABSENT_MEMBER for member in members)
        return args

    def stop_array(self, array_device: str) -> bool:
        success, _, _ = self._system_executor.execute_mdadm_command(['--stop', array_device])
        return success

    def stop_array_command(self, array_device: str) -> List[str]:
        return self._system_executor.full_command(CommandType.MDADM, ['--stop', array_device])

    # Mounts and mount directories

    def is_mount_point(self, path: str) -> bool:
        """Check whether something is already mounted at path."""
        target = os.path.realpath(path)
        try:
            partitions = psutil.disk_partitions(all=True)
        except OSError as e:
            logger.warning(f"Could not read mount table: {e}")
            return False
        return any(os.path.realpath(partition.mountpoint) == target for partition in partitions)

    def make_directory(self, path: str) -> None:
        """
        Create the mount directory.

        Raises:
            MountpointConflict: If the directory cannot be created
        """
        try:
            success, _, stderr = self._system_executor.execute_mkdir_command(path)
        except ValueError as e:
            success, stderr = False, str(e)
        if not success:
            raise MountpointConflict(
                f"Could not create mount directory {path}",
                state={'path': path, 'stderr': stderr.strip()}
            )

    def remove_directory(self, path: str) -> bool:
        success, _, _ = self._system_executor.execute_rmdir_command(path)
        return success

    def remove_directory_command(self, path: str) -> List[str]:
        return self._system_executor.full_command(CommandType.RMDIR, [path])

    def mount(self, device: str, mount_point: str,
              filesystem_type: Optional[str] = None, options: Optional[List[str]] = None) -> None:
        """
        Mount a device.

        Raises:
            MountFailure: If mount fails
        """
        option_str = ','.join(options) if options else None
        try:
            success, _, stderr = self._system_executor.execute_mount_command(
                device, mount_point, filesystem_type, option_str
            )
        except ValueError as e:
            success, stderr = False, str(e)
        if not success:
            raise MountFailure(
                f"Could not mount {device} at {mount_point}",
                state={'device': device, 'mount_point': mount_point, 'stderr': stderr.strip()}
            )
        logger.info(f"Mounted {device} at {mount_point}", extra={'step': 'mount', 'device': device})

    def unmount(self, mount_point: str) -> bool:
        success, _, _ = self._system_executor.execute_umount_command(mount_point)
        return success

    def unmount_command(self, mount_point: str) -> List[str]:
        return self._system_executor.full_command(CommandType.UMOUNT, [mount_point])

    def filesystem_size(self, mount_point: str) -> int:
        """Total size in bytes of the filesystem mounted at mount_point, 0 if unknown."""
        if self.dry_run:
            return 0
        try:
            return psutil.disk_usage(mount_point).total
        except OSError as e:
            logger.warning(f"Could not read usage for {mount_point}: {e}")
            return 0
