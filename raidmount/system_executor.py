"""Allow-listed system command execution for loop, md and mount operations."""

import subprocess
import logging
import shlex
from typing import List, Dict, Optional, Tuple
from enum import Enum
import re


logger = logging.getLogger(__name__)


class CommandType(Enum):
    """Supported command types for validation."""
    LOSETUP = "losetup"
    MDADM = "mdadm"
    MOUNT = "mount"
    UMOUNT = "umount"
    MKDIR = "mkdir"
    RMDIR = "rmdir"


class SystemCommandExecutor:
    """System command executor with argument validation, optional sudo and dry-run."""

    # Allowed commands and their argument patterns
    ALLOWED_COMMANDS = {
        CommandType.LOSETUP: {
            'binary': 'losetup',
            'allowed_args': {
                '--find', '-f', '--show', '--read-only', '-r',
                '--detach', '-d', '--associated', '-j', '--list', '-l',
                '--noheadings', '-n', '--output', '-O', 'NAME'
            },
            'option_prefixes': (),
            'requires_sudo': True
        },
        CommandType.MDADM: {
            'binary': 'mdadm',
            'allowed_args': {
                '--create', '-C', '--run', '-R', '--assume-clean',
                '--stop', '-S', '--force', '--detail', '-D', 'missing'
            },
            'option_prefixes': ('--level=', '--raid-devices=', '--metadata=', '--chunk='),
            'requires_sudo': True
        },
        CommandType.MOUNT: {
            'binary': 'mount',
            'allowed_args': {
                '-t', '--types', '-o', '--options', '-v', '--verbose'
            },
            'option_prefixes': (),
            'requires_sudo': True
        },
        CommandType.UMOUNT: {
            'binary': 'umount',
            'allowed_args': {
                '-f', '--force', '-l', '--lazy', '-v', '--verbose'
            },
            'option_prefixes': (),
            'requires_sudo': True
        },
        CommandType.MKDIR: {
            'binary': 'mkdir',
            'allowed_args': {'-p', '--parents'},
            'option_prefixes': (),
            'requires_sudo': True
        },
        CommandType.RMDIR: {
            'binary': 'rmdir',
            'allowed_args': set(),
            'option_prefixes': (),
            'requires_sudo': True
        }
    }

    # Options whose following argument is a free-form value
    VALUE_OPTIONS = {'-t', '--types', '-o', '--options', '--output', '-O'}

    # Loop and md device path validation pattern
    DEVICE_PATH_PATTERN = re.compile(r'^/dev/(loop/?[0-9]+|md[0-9]+|md/[a-zA-Z0-9_.-]+)$')

    # Absolute path without control characters (image files, mount points)
    FILE_PATH_PATTERN = re.compile(r'^/[^\x00-\x1f\x7f]*$')

    ALLOWED_FILESYSTEMS = {'ext4', 'ext3', 'ext2', 'xfs', 'btrfs', 'ntfs', 'ntfs3', 'vfat', 'exfat'}

    ALLOWED_MOUNT_OPTIONS = {
        'rw', 'ro', 'defaults', 'noatime', 'relatime', 'nodiratime',
        'exec', 'noexec', 'suid', 'nosuid', 'dev', 'nodev',
        'noload', 'norecovery', 'sync', 'async'
    }

    def __init__(self, dry_run: bool = False, use_sudo: bool = False, timeout: int = 300):
        """
        Initialize the SystemCommandExecutor.

        Args:
            dry_run: If True, commands will be logged but not executed
            use_sudo: Prefix privileged commands with sudo
            timeout: Per-command timeout in seconds
        """
        self.dry_run = dry_run
        self.use_sudo = use_sudo
        self.timeout = timeout
        self._command_history: List[Dict] = []

    def execute_losetup_command(self, args: List[str]) -> Tuple[bool, str, str]:
        """
        Execute a losetup command.

        Args:
            args: losetup arguments, e.g. ['--find', '--show', '/srv/disk1.img']

        Returns:
            Tuple of (success, stdout, stderr)
        """
        return self._execute_command(CommandType.LOSETUP, args)

    def execute_mdadm_command(self, args: List[str]) -> Tuple[bool, str, str]:
        """
        Execute an mdadm command.

        Args:
            args: mdadm arguments; 'missing' marks an absent member

        Returns:
            Tuple of (success, stdout, stderr)
        """
        return self._execute_command(CommandType.MDADM, args)

    def execute_mount_command(self,
                              device_path: str,
                              mount_point: str,
                              filesystem_type: Optional[str] = None,
                              options: Optional[str] = None) -> Tuple[bool, str, str]:
        """
        Execute a mount command.

        Args:
            device_path: Device path to mount
            mount_point: Mount point directory
            filesystem_type: Filesystem type, autodetected when None
            options: Comma-separated mount options

        Returns:
            Tuple of (success, stdout, stderr)
        """
        cmd_args = self.build_mount_args(device_path, mount_point, filesystem_type, options)
        return self._execute_command(CommandType.MOUNT, cmd_args)

    def build_mount_args(self,
                         device_path: str,
                         mount_point: str,
                         filesystem_type: Optional[str] = None,
                         options: Optional[str] = None) -> List[str]:
        """Validate and assemble mount arguments."""
        if not self._validate_device_path(device_path):
            raise ValueError(f"Invalid device path: {device_path}")

        if not self._validate_file_path(mount_point):
            raise ValueError(f"Invalid mount point: {mount_point}")

        cmd_args = []

        if filesystem_type:
            if not self._validate_filesystem_type(filesystem_type):
                raise ValueError(f"Invalid filesystem type: {filesystem_type}")
            cmd_args.extend(['-t', filesystem_type])

        if options:
            if not self._validate_mount_options(options):
                raise ValueError(f"Invalid mount options: {options}")
            cmd_args.extend(['-o', options])

        cmd_args.extend([device_path, mount_point])
        return cmd_args

    def execute_umount_command(self, mount_point: str) -> Tuple[bool, str, str]:
        """Unmount a mount point."""
        if not self._validate_file_path(mount_point):
            raise ValueError(f"Invalid mount point: {mount_point}")
        return self._execute_command(CommandType.UMOUNT, [mount_point])

    def execute_mkdir_command(self, path: str) -> Tuple[bool, str, str]:
        """Create a single directory (parents must exist)."""
        if not self._validate_file_path(path):
            raise ValueError(f"Invalid directory path: {path}")
        return self._execute_command(CommandType.MKDIR, [path])

    def execute_rmdir_command(self, path: str) -> Tuple[bool, str, str]:
        """Remove an empty directory."""
        if not self._validate_file_path(path):
            raise ValueError(f"Invalid directory path: {path}")
        return self._execute_command(CommandType.RMDIR, [path])

    def full_command(self, command_type: CommandType, args: List[str]) -> List[str]:
        """
        Build the argv that would be executed for a command, validating it first.

        Args:
            command_type: Type of command
            args: Command arguments

        Returns:
            Complete argv including sudo when enabled
        """
        command_config = self.ALLOWED_COMMANDS[command_type]
        self._validate_command_args(command_type, args)

        command = [command_config['binary']] + list(args)
        if self.use_sudo and command_config['requires_sudo']:
            command = ['sudo'] + command
        return command

    def _execute_command(self,
                         command_type: CommandType,
                         args: List[str]) -> Tuple[bool, str, str]:
        """
        Execute a validated command with proper logging and error handling.

        Args:
            command_type: Type of command to execute
            args: Command arguments

        Returns:
            Tuple of (success, stdout, stderr)
        """
        full_command = self.full_command(command_type, args)

        command_str = ' '.join(shlex.quote(arg) for arg in full_command)
        logger.info(f"Executing command: {command_str}")

        self._command_history.append({
            'command': command_str,
            'type': command_type.value,
            'dry_run': self.dry_run
        })

        if self.dry_run:
            logger.info("DRY RUN: Command would be executed")
            return True, "DRY RUN", ""

        try:
            result = subprocess.run(
                full_command,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False
            )

            success = result.returncode == 0

            if success:
                logger.debug(f"Command executed successfully: {command_str}")
            else:
                logger.error(f"Command failed with return code {result.returncode}: {command_str}",
                             extra={'command': command_str, 'returncode': result.returncode})
                logger.error(f"Error output: {result.stderr.strip()}")

            return success, result.stdout, result.stderr

        except subprocess.TimeoutExpired:
            logger.error(f"Command timed out after {self.timeout}s: {command_str}")
            return False, "", "Command timed out"

        except OSError as e:
            logger.error(f"Error executing command {command_str}: {e}")
            return False, "", str(e)

    def _validate_command_args(self, command_type: CommandType, args: List[str]) -> None:
        """
        Validate command arguments against allowed patterns.

        Args:
            command_type: Type of command
            args: Arguments to validate

        Raises:
            ValueError: If any argument is not allowed
        """
        command_config = self.ALLOWED_COMMANDS[command_type]
        allowed_args = command_config['allowed_args']
        prefixes = command_config['option_prefixes']

        for position, arg in enumerate(args):
            if (arg in allowed_args or
                    self.DEVICE_PATH_PATTERN.match(arg) or
                    self.FILE_PATH_PATTERN.match(arg)):
                continue

            if prefixes and arg.startswith(prefixes) and re.match(r'^--[a-z-]+=[A-Za-z0-9.]+$', arg):
                continue

            # Value following an option flag such as -o or -t
            previous = args[position - 1] if position > 0 else None
            if previous in self.VALUE_OPTIONS:
                if previous in {'-t', '--types'} and self._validate_filesystem_type(arg):
                    continue
                if previous in {'-o', '--options'} and self._validate_mount_options(arg):
                    continue
                if previous in {'-O', '--output'} and arg in allowed_args:
                    continue

            raise ValueError(f"Argument not allowed for {command_type.value}: {arg}")

    def _validate_device_path(self, path: str) -> bool:
        """Validate loop or md device path format."""
        return bool(self.DEVICE_PATH_PATTERN.match(path))

    def _validate_file_path(self, path: str) -> bool:
        """Validate absolute path format."""
        return bool(self.FILE_PATH_PATTERN.match(path))

    def _validate_filesystem_type(self, fs_type: str) -> bool:
        """Validate filesystem type."""
        return fs_type in self.ALLOWED_FILESYSTEMS

    def _validate_mount_options(self, options: str) -> bool:
        """Validate comma-separated mount options."""
        option_list = options.split(',')
        for option in option_list:
            if option.strip() not in self.ALLOWED_MOUNT_OPTIONS:
                return False
        return True

    def get_command_history(self) -> List[Dict]:
        """Get the history of executed commands."""
        return self._command_history.copy()

    def clear_command_history(self) -> None:
        """Clear the command history."""
        self._command_history.clear()
