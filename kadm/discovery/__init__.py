#!/usr/bin/env python3
#
# This module contains the discovery interface, which tells a joining node
# which API servers to contact and which certificate authority to trust, and
# its implementations.

import abc
import dataclasses
import kadm.configuration
import kadm.errors
import kadm.logging
import kadm.tls.crypto
import kadm.utility
import typing
import yarl

logger = kadm.logging.get_logger(__name__)


@dataclasses.dataclass(frozen=True)
class DiscoveryResult:
    # API server URLs in the order the operator gave them
    api_server_urls: typing.List[str]
    # PEM encoded cluster CA certificate
    trust_anchor: bytes


class DiscoveryProvider(abc.ABC):
    """
    Abstract class which must be implemented by a discovery mechanism.
    """

    @abc.abstractmethod
    def start(self) -> None:
        """
        Prepare any background state the mechanism needs. Called once before
        discover().
        """
        pass

    @abc.abstractmethod
    def discover(self) -> DiscoveryResult:
        """
        Return the API server endpoints and the trust anchor. This function
        must be idempotent and must not have side effects when it fails.
        """
        pass


def validate_api_server_url(url: str) -> None:
    "API servers are only reached over TLS, so a URL must be https with a host"
    try:
        parsed = yarl.URL(url)
    except ValueError as e:
        raise kadm.errors.ConfigurationError(f"{url!r} is not a valid URL") from e
    if parsed.scheme != "https" or not parsed.host:
        raise kadm.errors.ConfigurationError(
            f"API server URL {url!r} must be an https URL with a host"
        )


class OutOfBandDiscovery(DiscoveryProvider):
    """
    Discovery from inputs the operator copied onto the node ahead of time: a
    CA certificate file and a list of API server URLs.
    """

    def __init__(
        self, *, configuration: kadm.configuration.OutOfBandDiscoveryConfiguration
    ):
        self.__configuration = configuration

    def start(self) -> None:
        # Trust material is distributed manually, nothing runs in the
        # background
        pass

    def discover(self) -> DiscoveryResult:
        path = self.__configuration.ca_certificate_path
        logger.info(f"Reading certificate authority from {path}...")
        try:
            trust_anchor = kadm.utility.read_file(path)
        except kadm.errors.AssetIOError as e:
            raise kadm.errors.DiscoveryIOError(str(e)) from e
        try:
            kadm.tls.crypto.load_certificate(trust_anchor)
        except kadm.errors.CryptoError as e:
            raise kadm.errors.ConfigurationError(
                f"{path} does not contain a PEM certificate"
            ) from e

        api_server_urls = [
            url.strip()
            for url in self.__configuration.api_server_urls.split(",")
            if url.strip()
        ]
        if not api_server_urls:
            raise kadm.errors.ConfigurationError(
                "at least one API server URL must be given"
            )
        for url in api_server_urls:
            validate_api_server_url(url)

        return DiscoveryResult(api_server_urls=api_server_urls, trust_anchor=trust_anchor)


class GossipDiscovery(DiscoveryProvider):
    """
    Discovery by negotiating a trust anchor with peers that share a token,
    without a pre-shared certificate. Not implemented.
    """

    def __init__(
        self, *, configuration: kadm.configuration.GossipDiscoveryConfiguration
    ):
        self.__configuration = configuration

    def start(self) -> None:
        raise kadm.errors.UnimplementedError("gossip discovery is not implemented")

    def discover(self) -> DiscoveryResult:
        raise kadm.errors.UnimplementedError("gossip discovery is not implemented")


def create_discovery_provider(
    configuration: kadm.configuration.DiscoveryConfiguration,
) -> DiscoveryProvider:
    "Return the provider for the active discovery variant"
    if isinstance(configuration, kadm.configuration.OutOfBandDiscoveryConfiguration):
        return OutOfBandDiscovery(configuration=configuration)
    if isinstance(configuration, kadm.configuration.GossipDiscoveryConfiguration):
        return GossipDiscovery(configuration=configuration)
    raise kadm.errors.ConfigurationError(
        f"unsupported discovery configuration {type(configuration).__name__}"
    )
