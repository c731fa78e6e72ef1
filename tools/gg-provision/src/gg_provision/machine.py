"""Provisioning run orchestration.

A run walks a fixed sequence of states and publishes every transition
through the StatusReporter:

    NOT_STARTED -> CHECKING_PROVISIONING -> CHECKING_CONNECTIVITY
        -> READING_DATABASE -> GENERATING_CONFIG -> COMPLETED

with ALREADY_PROVISIONED (idempotent re-run) and ERROR as alternate
terminal states. Each stage hands its result to the next one; no stage
reads another's intermediate state.
"""

import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional, Sequence

import requests

from .certificates import BundleVerdict, CertificateIssuer, CertificateProvisioner
from .config import ProvisionerConfig
from .connectivity import ConnectivityChecker
from .database import DeviceConfigRepository
from .errors import ConnectivityError, InstallationError, InvalidTransition, ProvisioningError, RunLockedError
from .generator import ConfigGenerator
from .identity import detect_device_identifier
from .lock import RunLock
from .status import ProvisioningState, StatusReporter
from .verify import InstallationVerifier

logger = logging.getLogger(__name__)

State = ProvisioningState

TRANSITIONS = {
    State.NOT_STARTED: {State.CHECKING_PROVISIONING},
    State.CHECKING_PROVISIONING: {State.ALREADY_PROVISIONED, State.CHECKING_CONNECTIVITY},
    State.CHECKING_CONNECTIVITY: {State.READING_DATABASE},
    State.READING_DATABASE: {State.GENERATING_CONFIG},
    State.GENERATING_CONFIG: {State.COMPLETED},
}

# Published inside GENERATING_CONFIG once the bundle is on disk.
CERTIFICATES_WRITTEN_PROGRESS = 80


class ExitCode(IntEnum):
    """Process exit codes of a run."""

    SUCCESS = 0
    ERROR = 1
    CONNECTIVITY = 2
    LOCKED = 3


@dataclass(frozen=True)
class RunOutcome:
    """Terminal result of a run."""

    state: ProvisioningState
    exit_code: int
    detail: str

    @property
    def succeeded(self) -> bool:
        """Check if the run ended successfully."""
        return self.exit_code == ExitCode.SUCCESS


class ProvisioningStateMachine:
    """Drives one provisioning run."""

    def __init__(
        self,
        reporter: StatusReporter,
        verifier: InstallationVerifier,
        checker: ConnectivityChecker,
        repository: DeviceConfigRepository,
        provisioner: CertificateProvisioner,
        generator: ConfigGenerator,
        endpoints: Optional[Sequence[str]] = None,
        lock: Optional[RunLock] = None,
    ) -> None:
        """Initialize state machine.

        Args:
            reporter: Status document writer
            verifier: Idempotency check of the runtime root
            checker: Cloud endpoint reachability probe
            repository: Device record source
            provisioner: Certificate bundle writer
            generator: Runtime configuration writer
            endpoints: Endpoints to probe (default: checker configuration)
            lock: Run lock held for the whole run
        """
        self.reporter = reporter
        self.verifier = verifier
        self.checker = checker
        self.repository = repository
        self.provisioner = provisioner
        self.generator = generator
        self.endpoints = endpoints
        self.lock = lock
        self._state = State.NOT_STARTED

    @property
    def state(self) -> ProvisioningState:
        """Current state."""
        return self._state

    def run(self) -> RunOutcome:
        """Execute the run to a terminal state.

        A held run lock ends the run immediately with exit code 3 and leaves
        the status document untouched.
        """
        if self.lock is not None:
            try:
                self.lock.acquire()
            except RunLockedError as e:
                logger.error("%s", e.describe())
                return RunOutcome(self._state, ExitCode.LOCKED, e.describe())
            except OSError as e:
                return self._fail(f"RunLock: cannot open lock file: {e}", ExitCode.ERROR)

        try:
            return self._execute()
        finally:
            if self.lock is not None:
                self.lock.release()

    def _execute(self) -> RunOutcome:
        self.reporter.publish(State.NOT_STARTED)

        try:
            self._advance(State.CHECKING_PROVISIONING)
            installation = self.verifier.check()
            if installation.verdict is BundleVerdict.VALID:
                self._advance(State.ALREADY_PROVISIONED, installation.details)
                return RunOutcome(self._state, ExitCode.SUCCESS, installation.details)
            if installation.verdict is BundleVerdict.CORRUPT:
                raise InstallationError("installation corrupt", installation.details)
            logger.info("Device not provisioned yet: %s", installation.details)

            self._advance(State.CHECKING_CONNECTIVITY)
            self.checker.check_reachable(self.endpoints)

            self._advance(State.READING_DATABASE)
            record = self.repository.load_device_record()

            self._advance(State.GENERATING_CONFIG, f"Provisioning thing {record.thing_name}")
            bundle = self.provisioner.ensure_provisioned(record)
            self.reporter.publish(
                State.GENERATING_CONFIG,
                "Certificates written, generating Greengrass configuration",
                progress=CERTIFICATES_WRITTEN_PROGRESS,
            )
            config_path = self.generator.render(record, bundle)

            detail = f"Provisioned {record.thing_name}, configuration at {config_path}"
            self._advance(State.COMPLETED, detail)
            return RunOutcome(self._state, ExitCode.SUCCESS, detail)

        except ConnectivityError as e:
            return self._fail(e.describe(), ExitCode.CONNECTIVITY)
        except ProvisioningError as e:
            return self._fail(e.describe(), ExitCode.ERROR)
        except Exception as e:
            logger.exception("Unexpected failure during %s", self._state.value)
            return self._fail(f"{self._state.value}: {type(e).__name__}: {e}", ExitCode.ERROR)

    def _advance(self, target: ProvisioningState, message: Optional[str] = None) -> None:
        if target not in TRANSITIONS.get(self._state, ()):
            raise InvalidTransition("illegal transition", f"{self._state.value} -> {target.value}")
        self._state = target
        self.reporter.publish(target, message)

    def _fail(self, error_details: str, exit_code: ExitCode) -> RunOutcome:
        logger.error("Provisioning failed in %s: %s", self._state.value, error_details)
        self._state = State.ERROR
        self.reporter.publish(State.ERROR, error_details=error_details)
        return RunOutcome(self._state, exit_code, error_details)


def build_state_machine(
    config: ProvisionerConfig,
    session: Optional[requests.Session] = None,
    issuer: Optional[CertificateIssuer] = None,
) -> ProvisioningStateMachine:
    """Wire the default collaborators from settings.

    Args:
        config: Process-wide settings
        session: HTTP session shared by the probe and the CA download
        issuer: Certificate issuer (default: AWS IoT)
    """
    session = session or requests.Session()
    device_identifier = config.device_identifier or detect_device_identifier()

    return ProvisioningStateMachine(
        reporter=StatusReporter(config.status_file),
        verifier=InstallationVerifier(config.config_file),
        checker=ConnectivityChecker(config.connectivity, session=session),
        repository=DeviceConfigRepository(
            config.database_path,
            device_identifier=device_identifier,
            timeout_seconds=config.connectivity.timeout_seconds,
        ),
        provisioner=CertificateProvisioner(
            config.certs_dir,
            config.issuance,
            issuer=issuer,
            session=session,
        ),
        generator=ConfigGenerator(config.runtime_path),
        lock=RunLock(config.lock_file),
    )
