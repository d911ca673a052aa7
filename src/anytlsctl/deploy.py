"""Deployment orchestrator.

A deployment runs four stages in a fixed order and never loops back:

1. check the container engine, then probe the public IPv4 address;
2. provision the secret and the certificate/key pair;
3. render the sing-box configuration;
4. replace the container and start it.

Docker is checked first so a host without a usable engine fails before any
file is written. Recoverable problems (IP lookup fallback, local image
fallback, stale container removal failures) are collected as warnings on the
report; everything else raises :class:`DeploymentError`.
"""
from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field

from .config import AppConfig
from .credentials import SecretError, SecretResult, SecretStore
from .descriptor import ConnectionDescriptor
from .logging import OperationScope
from .network import PublicIPProber, PublicIPResult
from .paths import DeploymentPaths
from .providers.docker import (
    ContainerSpec,
    DockerError,
    DockerProvider,
    DockerUnavailableError,
    ImageAcquisition,
    PortMapping,
    RemovalOutcome,
)
from .singbox import InboundSettings, render_config, write_config
from .tls import (
    NO_MATERIAL_REASON,
    CertificateError,
    CertificateProvisioner,
    CertificateResult,
    TLSMaterial,
)

Notifier = Callable[[str, str], None]


class DeploymentError(RuntimeError):
    """Raised when a stage fails in a way the run cannot recover from."""

    def __init__(self, stage: str, message: str, *, hint: str | None = None) -> None:
        """Record the failing *stage* and an optional corrective *hint*."""
        super().__init__(message)
        self.stage = stage
        self.hint = hint


@dataclass
class DeploymentReport:
    """Everything a finished deployment produced."""

    paths: DeploymentPaths
    public_ip: PublicIPResult
    secret: SecretResult
    certificate: CertificateResult
    config_path: str
    removal: RemovalOutcome
    image: ImageAcquisition
    container_id: str
    container_status: str
    descriptor: ConnectionDescriptor
    warnings: list[str] = field(default_factory=list)

    def to_dict(self, *, redact: bool = False) -> dict[str, object]:
        """Return a serialisable representation; *redact* hides the secret."""
        secret_value = "***" if redact else self.secret.value
        return {
            "paths": self.paths.to_dict(),
            "public_ip": self.public_ip.to_dict(),
            "secret": {
                "value": secret_value,
                "path": str(self.secret.path),
                "created": self.secret.created,
            },
            "certificate": self.certificate.to_dict(),
            "config": self.config_path,
            "stale_container": {
                "existed": self.removal.existed,
                "removed": self.removal.removed,
                "detail": self.removal.detail,
            },
            "image": {
                "reference": self.image.image,
                "source": self.image.source,
                "detail": self.image.detail,
            },
            "container_id": self.container_id,
            "container_status": self.container_status,
            "descriptor": None if redact else self.descriptor.to_uri(),
            "warnings": list(self.warnings),
        }


def build_container_spec(config: AppConfig, paths: DeploymentPaths) -> ContainerSpec:
    """Return the ``docker run`` description for *config*."""
    ports = tuple(
        PortMapping(
            host_port=config.host_port,
            container_port=config.listen_port,
            transport=transport,
        )
        for transport in config.transports
    )
    return ContainerSpec(
        name=config.container_name,
        image=config.image,
        ports=ports,
        volume_source=paths.workdir,
        volume_target=paths.container_data_dir,
        command=("run", "-c", paths.container_config),
        restart_policy=config.docker.restart_policy,
        read_only_volume=True,
    )


def build_descriptor(config: AppConfig, secret: str, host: str) -> ConnectionDescriptor:
    """Return the share link for *secret* at *host*."""
    return ConnectionDescriptor(
        secret=secret,
        host=host,
        port=config.host_port,
        sni=config.common_name,
    )


def _noop(level: str, message: str) -> None:
    return None


class Deployer:
    """Run the deployment stages against one working directory."""

    def __init__(
        self,
        config: AppConfig,
        *,
        docker: DockerProvider,
        prober: PublicIPProber,
        paths: DeploymentPaths | None = None,
        sleep: Callable[[float], None] = time.sleep,
        notify: Notifier | None = None,
    ) -> None:
        """Wire the collaborators used by :meth:`run`."""
        self._config = config
        self._docker = docker
        self._prober = prober
        self._paths = paths or DeploymentPaths.from_config(config)
        self._sleep = sleep
        self._notify = notify or _noop

    @property
    def paths(self) -> DeploymentPaths:
        """Return the path contract used by this deployer."""
        return self._paths

    def run(self, op: OperationScope) -> DeploymentReport:
        """Execute every stage and return the report."""
        warnings: list[str] = []

        self.check_environment(op)
        public_ip = self.probe_public_ip(op)
        if public_ip.placeholder:
            warnings.append(
                "Public IP could not be detected; replace "
                f"'{public_ip.address}' in the connection link manually."
            )

        try:
            self._paths.ensure_workdir()
        except OSError as exc:
            op.add_step("workdir.ensure", status="error", detail=str(exc))
            message = f"Cannot prepare working directory {self._paths.workdir}: {exc}"
            raise DeploymentError("workdir", message) from exc
        op.add_step("workdir.ensure", status="success", detail=str(self._paths.workdir))

        secret = self.provision_secret(op)
        certificate = self.provision_certificate(op)
        if certificate.problem:
            warnings.append(
                f"Existing certificate and key were kept although {certificate.problem}."
            )
        config_path = self.write_config(op, secret.value)

        removal = self.remove_stale_container(op)
        if removal.existed and not removal.removed:
            warnings.append(
                f"Could not remove existing container {self._config.container_name}: "
                f"{removal.detail}"
            )
        image = self.acquire_image(op)
        if not image.pulled:
            warnings.append(f"Image pull failed; using local image {image.image}.")
        container_id = self.start_container(op)
        status = self.verify_started(op)

        descriptor = build_descriptor(self._config, secret.value, public_ip.address)
        return DeploymentReport(
            paths=self._paths,
            public_ip=public_ip,
            secret=secret,
            certificate=certificate,
            config_path=str(config_path),
            removal=removal,
            image=image,
            container_id=container_id,
            container_status=status,
            descriptor=descriptor,
            warnings=warnings,
        )

    # Stage 1 ----------------------------------------------------------
    def check_environment(self, op: OperationScope) -> None:
        """Abort unless docker is installed and its daemon is reachable."""
        self._notify("info", "Checking Docker environment...")
        try:
            self._docker.ensure_available()
        except DockerUnavailableError as exc:
            op.add_step("docker.available", status="error", detail=str(exc))
            raise DeploymentError("environment", str(exc), hint=exc.hint) from exc
        op.add_step("docker.available", status="success")

    def probe_public_ip(self, op: OperationScope) -> PublicIPResult:
        """Resolve the public IPv4 address or the placeholder."""
        self._notify("info", "Detecting public IP address...")
        result = self._prober.probe()
        for attempt in result.attempts:
            op.add_step(
                "network.public_ip",
                status="success" if attempt.ok else "warning",
                detail=f"{attempt.url}: {attempt.address or attempt.error}",
            )
        if result.placeholder:
            self._notify(
                "warning",
                "Unable to detect the public IP; replace "
                f"'{result.address}' in the connection link manually.",
            )
        else:
            self._notify("info", f"Detected public IP: {result.address}")
        return result

    # Stage 2 ----------------------------------------------------------
    def provision_secret(self, op: OperationScope) -> SecretResult:
        """Reuse or create the persisted secret."""
        store = SecretStore(self._paths.secret)
        try:
            result = store.provision()
        except SecretError as exc:
            op.add_step("secret.provision", status="error", detail=str(exc))
            raise DeploymentError("credentials", str(exc)) from exc
        if result.created:
            self._notify("info", f"Generated new secret: {result.value}")
        else:
            self._notify("info", f"Reusing saved secret: {result.value}")
        op.add_step(
            "secret.provision",
            status="success",
            detail="created" if result.created else "reused",
        )
        return result

    def provision_certificate(self, op: OperationScope) -> CertificateResult:
        """Reuse or create the certificate/key pair."""
        provisioner = CertificateProvisioner(
            TLSMaterial(certificate=self._paths.certificate, key=self._paths.key),
            common_name=self._config.common_name,
            days=self._config.days,
            replace_invalid=self._config.regenerate_tls,
        )
        try:
            result = provisioner.ensure()
        except CertificateError as exc:
            op.add_step("tls.provision", status="error", detail=str(exc))
            raise DeploymentError("credentials", str(exc)) from exc
        if result.created:
            if result.reason != NO_MATERIAL_REASON:
                self._notify(
                    "warning",
                    f"Replacing certificate and key together: {result.reason}.",
                )
            self._notify(
                "info",
                f"Generated self-signed certificate: CN={self._config.common_name}, "
                f"valid {self._config.days} days.",
            )
        elif result.problem:
            self._notify(
                "warning",
                f"Keeping existing certificate and key although {result.problem}; "
                "set regenerate_tls to replace them.",
            )
        else:
            self._notify("info", "Existing certificate and key found; skipping generation.")
        op.add_step(
            "tls.provision",
            status="warning" if result.problem else "success",
            detail=("created: " if result.created else "reused: ")
            + (result.problem or result.reason),
        )
        return result

    # Stage 3 ----------------------------------------------------------
    def write_config(self, op: OperationScope, secret: str) -> str:
        """Render the sing-box document into the working directory."""
        settings = InboundSettings(
            listen_port=self._config.listen_port,
            certificate_path=self._paths.container_certificate,
            key_path=self._paths.container_key,
            password=secret,
            user_name=self._config.singbox.user_name,
            log_level=self._config.singbox.log_level,
        )
        try:
            path = write_config(self._paths.config, render_config(settings))
        except OSError as exc:
            op.add_step("config.write", status="error", detail=str(exc))
            message = f"Failed to write {self._paths.config}: {exc}"
            raise DeploymentError("config", message) from exc
        self._notify("info", f"Configuration written: {path}")
        op.add_step("config.write", status="success", detail=str(path))
        return str(path)

    # Stage 4 ----------------------------------------------------------
    def remove_stale_container(self, op: OperationScope) -> RemovalOutcome:
        """Remove any container holding the reserved name; never fatal."""
        name = self._config.container_name
        outcome = self._docker.remove_stale(name)
        if outcome.existed:
            self._notify("info", f"Found existing container {name}; recreating it.")
        if outcome.existed and not outcome.removed:
            op.add_step("container.remove_stale", status="warning", detail=outcome.detail)
        elif outcome.removed:
            op.add_step("container.remove_stale", status="success", detail=name)
        else:
            op.add_step("container.remove_stale", status="skipped", detail="absent")
        return outcome

    def acquire_image(self, op: OperationScope) -> ImageAcquisition:
        """Pull the image or fall back to the local copy."""
        image = self._config.image
        self._notify("info", f"Pulling image: {image}")
        try:
            acquisition = self._docker.acquire_image(image)
        except DockerError as exc:
            op.add_step("image.acquire", status="error", detail=str(exc))
            raise DeploymentError("image", str(exc)) from exc
        if acquisition.pulled:
            op.add_step("image.acquire", status="success", detail=image)
        else:
            self._notify("warning", f"Could not pull {image}; using the local image.")
            op.add_step("image.acquire", status="warning", detail=f"local: {image}")
        return acquisition

    def start_container(self, op: OperationScope) -> str:
        """Start the detached, auto-restarting container."""
        spec = build_container_spec(self._config, self._paths)
        mappings = ", ".join(mapping.to_arg() for mapping in spec.ports)
        self._notify("info", f"Starting container {spec.name} ({mappings})")
        try:
            container_id = self._docker.run(spec)
        except DockerError as exc:
            op.add_step("container.run", status="error", detail=str(exc))
            raise DeploymentError("container", str(exc)) from exc
        op.add_step("container.run", status="success", detail=container_id or spec.name)
        return container_id

    def verify_started(self, op: OperationScope) -> str:
        """Pause briefly and return ``docker ps`` output for the name.

        This is a visual confirmation only; a container that exits after the
        pause is not detected.
        """
        self._sleep(self._config.startup_delay)
        try:
            result = self._docker.list_matching(self._config.container_name)
        except DockerError as exc:
            op.add_step("container.status", status="warning", detail=str(exc))
            return ""
        output = (result.stdout or "").rstrip()
        op.add_step("container.status", status="info", detail=f"rc={result.returncode}")
        return output


__all__ = [
    "DeploymentError",
    "DeploymentReport",
    "Deployer",
    "build_container_spec",
    "build_descriptor",
]
