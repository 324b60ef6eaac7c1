#!/usr/bin/env python3
#
# This package contains modules related to loading, validating and accessing
# cluster and discovery configuration.

import dacite
import dataclasses
import ipaddress
import kadm.errors
import pathlib
import typing
import yaml


@dataclasses.dataclass(frozen=True)
class OutOfBandDiscoveryConfiguration:
    "Discovery inputs distributed manually by the operator"
    # Comma separated, ordered list of API server URLs
    api_server_urls: str
    # Path to the PEM encoded cluster CA certificate
    ca_certificate_path: str
    kind: typing.Literal["OutOfBand"] = "OutOfBand"
    # Extra DNS name encoded into the API server certificate
    api_server_dns_name: typing.Optional[str] = None
    # Address the API server listens on
    listen_ip: typing.Optional[str] = None


@dataclasses.dataclass(frozen=True)
class GossipDiscoveryConfiguration:
    "Discovery inputs for peer negotiation. Declared, not implemented."
    token: str
    peers: typing.List[str]
    kind: typing.Literal["Gossip"] = "Gossip"


DiscoveryConfiguration = typing.Union[
    OutOfBandDiscoveryConfiguration, GossipDiscoveryConfiguration
]


@dataclasses.dataclass(frozen=True)
class ClusterConfiguration:
    "Struct that contains user-configurable settings"
    # Name of the cluster as it appears in client configuration files
    cluster_name: str = "kubernetes"
    # Directory for client configuration files (admin.conf, kubelet.conf)
    configuration_directory: str = "/etc/kubernetes"
    # Directory for PEM encoded keys and certificates
    pki_directory: str = "/etc/kubernetes/pki"
    # Well-known in-cluster address of the API server service
    api_service_address: str = "10.3.0.1"
    # Cluster DNS domain used for the API server's service names
    dns_domain: str = "cluster.local"
    # Port of the secure API server endpoint
    api_server_port: int = 443
    # Address the API server listens on, if known
    listen_ip: typing.Optional[str] = None
    # Extra DNS name for the API server certificate
    api_server_dns_name: typing.Optional[str] = None
    # Lifetime of the root certificate authority
    certificate_authority_validity_days: int = 3650
    # Lifetime of leaf certificates
    certificate_validity_days: int = 365
    # Upper bound on waiting for a signing request decision
    approval_timeout_seconds: int = 3600
    # Name this node registers as; defaults to the hostname
    node_name: typing.Optional[str] = None
    # Number of join attempts on transient protocol failures
    join_attempts: int = 3
    # Initial delay between join attempts, doubled after each failure
    join_backoff_seconds: float = 5.0
    discovery: typing.Optional[DiscoveryConfiguration] = None

    @property
    def pki_path(self) -> pathlib.Path:
        return pathlib.Path(self.pki_directory)

    @property
    def configuration_path(self) -> pathlib.Path:
        return pathlib.Path(self.configuration_directory)


def cluster_configuration_from_dict(data: typing.Optional[dict]) -> ClusterConfiguration:
    """
    Build and validate a configuration struct from a dictionary. An empty or
    missing dictionary yields the defaults. Raises ConfigurationError if the
    data does not describe a valid configuration.
    """
    try:
        configuration = dacite.from_dict(
            data_class=ClusterConfiguration,
            data=data or {},
            config=dacite.Config(strict=True),
        )
    except dacite.DaciteError as e:
        raise kadm.errors.ConfigurationError(f"invalid configuration: {e}") from e
    validate_configuration(configuration)
    return configuration


def load_cluster_configuration(f: typing.IO) -> ClusterConfiguration:
    """
    Load the given configuration YAML or JSON file. The configuration will be
    validated during loading. If the configuration is valid, return a
    configuration struct. Otherwise, raises ConfigurationError.

    This should only be called once, in main().
    """
    try:
        data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise kadm.errors.ConfigurationError(f"unable to parse configuration: {e}") from e
    if data is not None and not isinstance(data, dict):
        raise kadm.errors.ConfigurationError("configuration must be a mapping")
    return cluster_configuration_from_dict(data)


def discovery_configuration_from_dict(data: dict) -> DiscoveryConfiguration:
    """
    Build one discovery variant from a dictionary, selected by its "kind" key.
    A dictionary without a kind is treated as OutOfBand.
    """
    variants: typing.Dict[str, typing.Type] = {
        "OutOfBand": OutOfBandDiscoveryConfiguration,
        "Gossip": GossipDiscoveryConfiguration,
    }
    kind = data.get("kind", "OutOfBand")
    if kind not in variants:
        raise kadm.errors.ConfigurationError(
            f"discovery kind must be one of {sorted(variants)}, not {kind!r}"
        )
    try:
        return dacite.from_dict(
            data_class=variants[kind], data=data, config=dacite.Config(strict=True)
        )
    except dacite.DaciteError as e:
        raise kadm.errors.ConfigurationError(f"invalid {kind} discovery: {e}") from e


def validate_configuration(configuration: ClusterConfiguration) -> None:
    """
    Check if the given configuration struct has any obvious mistakes. If the
    configuration is valid, runs to completion. Otherwise, raises a
    ConfigurationError.
    """
    validators = [
        validate_cluster_name,
        validate_addresses,
        validate_validity_periods,
        validate_join_policy,
    ]

    for f in validators:
        f(configuration)


def validate_cluster_name(configuration: ClusterConfiguration) -> None:
    if not configuration.cluster_name:
        raise kadm.errors.ConfigurationError("cluster_name must not be empty")


def validate_addresses(configuration: ClusterConfiguration) -> None:
    for field in ("api_service_address", "listen_ip"):
        value = getattr(configuration, field)
        if value is None:
            continue
        try:
            ipaddress.ip_address(value)
        except ValueError as e:
            raise kadm.errors.ConfigurationError(
                f"{field} must be an IP address, not {value!r}"
            ) from e
    if not 0 < configuration.api_server_port < 65536:
        raise kadm.errors.ConfigurationError("api_server_port must be a TCP port")


def validate_validity_periods(configuration: ClusterConfiguration) -> None:
    if configuration.certificate_validity_days <= 0:
        raise kadm.errors.ConfigurationError("certificate_validity_days must be positive")
    # Leaves must not outlive the root that signed them
    if (
        configuration.certificate_authority_validity_days
        < configuration.certificate_validity_days
    ):
        raise kadm.errors.ConfigurationError(
            "certificate_authority_validity_days must be at least certificate_validity_days"
        )


def validate_join_policy(configuration: ClusterConfiguration) -> None:
    if configuration.approval_timeout_seconds <= 0:
        raise kadm.errors.ConfigurationError("approval_timeout_seconds must be positive")
    if configuration.join_attempts < 1:
        raise kadm.errors.ConfigurationError("join_attempts must be at least 1")
    if configuration.join_backoff_seconds < 0:
        raise kadm.errors.ConfigurationError("join_backoff_seconds must not be negative")
