"""
Drives a provisioning run: parse, validate, provision, persist teardown.

States move Idle -> Parsed -> Validated -> Provisioned -> Finalized. Any
failure moves to Failed; provisioning failures are unwound by the
provisioner before the orchestrator sees them.
"""

import os
import logging
from pathlib import Path
from typing import Optional, Sequence

from .block_devices import BlockDeviceManager
from .config_manager import RaidMountConfig
from .errors import ProvisionError, RaidMountError, RejectReason, ValidationError
from .models import OrchestratorState, ProvisionedArray
from .provisioner import ResourceProvisioner
from .rollback import RollbackLedger
from .system_executor import SystemCommandExecutor
from .validator import DiskSetValidator, build_slots, describe_rejection

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 2


class Orchestrator:
    """Runs one provisioning request end to end and reports an exit code."""

    def __init__(self,
                 config: RaidMountConfig,
                 validator: Optional[DiskSetValidator] = None,
                 provisioner: Optional[ResourceProvisioner] = None,
                 dry_run: bool = False):
        """
        Initialize the orchestrator.

        Args:
            config: Loaded configuration
            validator: Disk set validator, a default one when None
            provisioner: Resource provisioner, built from config when None
            dry_run: Log commands instead of running them and skip writing the teardown script
        """
        self.config = config
        self.dry_run = dry_run
        self._validator = validator or DiskSetValidator()
        if provisioner is None:
            executor = SystemCommandExecutor(
                dry_run=dry_run,
                use_sudo=config.use_sudo,
                timeout=config.max_command_timeout,
            )
            provisioner = ResourceProvisioner.from_config(config, BlockDeviceManager(executor))
        self._provisioner = provisioner

        self.state = OrchestratorState.IDLE
        self.ledger: Optional[RollbackLedger] = None
        self.array: Optional[ProvisionedArray] = None
        self.error: Optional[RaidMountError] = None
        self.script_path: Optional[Path] = None

    def run(self,
            level: str,
            disks: Sequence[str],
            mount_dir: str,
            cleanup_script: Optional[str] = None) -> int:
        """
        Provision an array from disk arguments and mount it.

        Args:
            level: Requested RAID level
            disks: Image paths or absent markers, in slot order
            mount_dir: Target mount directory
            cleanup_script: Teardown script path, derived from config when None

        Returns:
            EXIT_SUCCESS, or EXIT_FAILURE on any validation or provisioning failure
        """
        if self.state is not OrchestratorState.IDLE:
            raise RuntimeError("Orchestrator instances are single-use")

        self.state = OrchestratorState.PARSED
        logger.info(f"Requested RAID{level} from {len(disks)} slot(s) at {mount_dir}")

        # Slot construction is the first validation check
        try:
            slots = build_slots(disks, self.config.absent_marker)
        except ValueError as e:
            empty = [index for index, disk in enumerate(disks, start=1) if not disk]
            return self._fail(ValidationError(
                str(e), RejectReason.INVALID_DISK_FILE,
                {'slots': empty, 'paths': {index: '' for index in empty}},
            ))

        result = self._validator.validate(level, slots)
        if not result.accepted:
            message = describe_rejection(result)
            return self._fail(ValidationError(message, result.reason, result.detail))
        try:
            request = result.to_request(mount_dir)
        except ValueError as e:
            return self._fail(RaidMountError(str(e)))
        self.state = OrchestratorState.VALIDATED

        self.ledger = RollbackLedger()
        try:
            self.array = self._provisioner.provision(request, self.ledger)
        except ProvisionError as e:
            return self._fail(e)
        self.state = OrchestratorState.PROVISIONED

        return self._finalize(cleanup_script)

    def default_script_path(self, array_device: str) -> str:
        name = os.path.basename(array_device)
        return os.path.join(self.config.cleanup_script_dir, f"raidmount-teardown-{name}.sh")

    def _finalize(self, cleanup_script: Optional[str]) -> int:
        array = self.array
        description = f"raidmount teardown for {array.array_device} mounted at {array.mount_dir}"

        if self.dry_run:
            logger.info("DRY RUN: teardown script not written")
            print(self.ledger.render_script(description), end='')
        else:
            path = cleanup_script or self.default_script_path(array.array_device)
            try:
                self.script_path = self.ledger.write_script(path, description)
            except OSError as e:
                error = ProvisionError(f"Could not write teardown script {path}: {e}")
                error.state['rollback_failures'] = self.ledger.unwind()
                return self._fail(error)

        self.state = OrchestratorState.FINALIZED
        status = "degraded" if array.degraded else "complete"
        print(f"Mounted {array.array_device} ({array.level.mdadm_name}, "
              f"{len(array.slots)} slots, {status}) at {array.mount_dir}")
        if self.script_path:
            print(f"Teardown: {self.script_path}")
        return EXIT_SUCCESS

    def _fail(self, error: RaidMountError) -> int:
        self.error = error
        self.state = OrchestratorState.FAILED
        logger.error(error.message)
        return EXIT_FAILURE
