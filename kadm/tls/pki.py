#!/usr/bin/env python3
#
# This module generates and persists the control plane's Public Key
# Infrastructure: the cluster root CA, the API server serving certificate, the
# service account signing key and the admin and kubelet client identities.

import concurrent.futures
import cryptography.x509
import dataclasses
import datetime
import ipaddress
import kadm.configuration
import kadm.configuration.project
import kadm.errors
import kadm.kubernetes.kubeconfig
import kadm.logging
import kadm.tls.crypto
import kadm.utility
import pathlib
import socket
import typing
import yarl

logger = kadm.logging.get_logger(__name__)

CERTIFICATE_AUTHORITY_ASSET = "ca"
APISERVER_ASSET = "apiserver"
SERVICE_ACCOUNT_ASSET = "sa"
ADMIN_ASSET = "admin"
KUBELET_ASSET = "kubelet"


@dataclasses.dataclass(frozen=True)
class KubernetesPublicKeyInfrastructure:
    certificate_authority: kadm.tls.crypto.Keypair
    apiserver_keypair: kadm.tls.crypto.Keypair
    service_account_key: kadm.tls.crypto.PrivateKey
    admin_keypair: kadm.tls.crypto.Keypair
    kubelet_keypair: kadm.tls.crypto.Keypair


def private_key_path(pki_directory: pathlib.Path, name: str) -> pathlib.Path:
    return pki_directory.joinpath(f"{name}-key.pem")


def public_key_path(pki_directory: pathlib.Path, name: str) -> pathlib.Path:
    return pki_directory.joinpath(f"{name}-pub.pem")


def certificate_path(pki_directory: pathlib.Path, name: str) -> pathlib.Path:
    return pki_directory.joinpath(f"{name}.pem")


def apiserver_alternative_names(
    configuration: kadm.configuration.ClusterConfiguration,
) -> kadm.tls.crypto.AlternativeNames:
    """
    Names the API server certificate must be valid for. The in-cluster service
    address and the service's DNS names are always present; the operator's DNS
    name and listen address are added when configured. No name appears twice.
    """
    project = kadm.configuration.project.ProjectConfiguration
    service = project.apiserver_service_name
    namespace = project.apiserver_service_namespace
    dns_names = [
        service,
        f"{service}.{namespace}",
        f"{service}.{namespace}.svc",
        f"{service}.{namespace}.svc.{configuration.dns_domain}",
    ]
    if configuration.api_server_dns_name:
        dns_names.append(configuration.api_server_dns_name)

    ip_addresses = [ipaddress.ip_address(configuration.api_service_address)]
    if configuration.listen_ip:
        ip_addresses.append(ipaddress.ip_address(configuration.listen_ip))

    return kadm.tls.crypto.AlternativeNames(
        dns_names=tuple(dns_names), ip_addresses=tuple(ip_addresses)
    ).deduplicated()


def node_name(configuration: kadm.configuration.ClusterConfiguration) -> str:
    return configuration.node_name or socket.gethostname().lower()


def write_keypair(
    pki_directory: pathlib.Path,
    name: str,
    *,
    private_key: kadm.tls.crypto.PrivateKey,
    certificate: typing.Optional[cryptography.x509.Certificate] = None,
) -> None:
    """
    Write <name>-key.pem, <name>-pub.pem and, if given, <name>.pem. The
    certificate is written last, so its presence means the whole asset is on
    disk. Raises AssetIOError on the first failed write.
    """
    logger.info(f"Writing {name} assets to {pki_directory}...")
    kadm.utility.write_file_atomically(
        private_key_path(pki_directory, name),
        kadm.tls.crypto.serialize_private_key(private_key),
        mode=0o600,
    )
    kadm.utility.write_file_atomically(
        public_key_path(pki_directory, name),
        kadm.tls.crypto.serialize_public_key(private_key),
    )
    if certificate is not None:
        kadm.utility.write_file_atomically(
            certificate_path(pki_directory, name),
            kadm.tls.crypto.serialize_certificate(certificate),
        )


def load_keypair(pki_directory: pathlib.Path, name: str) -> kadm.tls.crypto.Keypair:
    return kadm.tls.crypto.load_keypair(
        kadm.utility.read_file(private_key_path(pki_directory, name)),
        kadm.utility.read_file(certificate_path(pki_directory, name)),
    )


def load_or_create_certificate_authority(
    configuration: kadm.configuration.ClusterConfiguration,
) -> kadm.tls.crypto.Keypair:
    """
    Reuse the root CA in the PKI directory if one was completely written by a
    previous run, otherwise generate and write a new one. The root is on disk
    when this function returns.
    """
    pki_directory = configuration.pki_path
    if certificate_path(pki_directory, CERTIFICATE_AUTHORITY_ASSET).exists():
        logger.info(f"Using existing certificate authority in {pki_directory}...")
        keypair = load_keypair(pki_directory, CERTIFICATE_AUTHORITY_ASSET)
        if (
            keypair.certificate.public_key().public_numbers()
            != keypair.private_key.public_key().public_numbers()
        ):
            raise kadm.errors.CryptoError(
                f"certificate authority key in {pki_directory} does not match its certificate"
            )
        # Leaves must not outlive the root that signed them
        expires = keypair.certificate.not_valid_after_utc
        leaves_expire = datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(
            days=configuration.certificate_validity_days
        )
        if expires < leaves_expire:
            raise kadm.errors.CryptoError(
                f"certificate authority in {pki_directory} expires {expires:%Y-%m-%d}, "
                "before the certificates it would issue"
            )
        return keypair

    logger.info("Generating certificate authority...")
    keypair = kadm.tls.crypto.generate_root_certificate_authority(
        kadm.configuration.project.ProjectConfiguration.certificate_authority_name,
        validity=datetime.timedelta(days=configuration.certificate_authority_validity_days),
    )
    write_keypair(
        pki_directory,
        CERTIFICATE_AUTHORITY_ASSET,
        private_key=keypair.private_key,
        certificate=keypair.certificate,
    )
    return keypair


def generate_service_account_key() -> kadm.tls.crypto.PrivateKey:
    "Key used to sign and verify service account tokens. It has no certificate."
    return kadm.tls.crypto.generate_private_key()


def generate_control_plane_pki(
    configuration: kadm.configuration.ClusterConfiguration,
) -> KubernetesPublicKeyInfrastructure:
    """
    Generate the control plane PKI and write it to the configured PKI
    directory. The root CA is written before any leaf is issued. Leaves are
    issued in parallel; they only read the root keypair. Any failure aborts
    the whole operation.
    """
    project = kadm.configuration.project.ProjectConfiguration
    pki_directory = kadm.utility.ensure_directory(configuration.pki_path)
    certificate_authority = load_or_create_certificate_authority(configuration)
    validity = datetime.timedelta(days=configuration.certificate_validity_days)

    leaf_requests: typing.Dict[str, typing.Callable[[], typing.Any]] = {
        APISERVER_ASSET: lambda: kadm.tls.crypto.issue_certificate(
            project.apiserver_common_name,
            alternative_names=apiserver_alternative_names(configuration),
            usage=kadm.tls.crypto.CertificateUsage.SERVER,
            certificate_authority_keypair=certificate_authority,
            validity=validity,
        ),
        ADMIN_ASSET: lambda: kadm.tls.crypto.issue_certificate(
            project.admin_common_name,
            organization=project.admin_organization,
            usage=kadm.tls.crypto.CertificateUsage.CLIENT,
            certificate_authority_keypair=certificate_authority,
            validity=validity,
        ),
        # https://kubernetes.io/docs/reference/access-authn-authz/node/
        KUBELET_ASSET: lambda: kadm.tls.crypto.issue_certificate(
            f"{project.node_user_prefix}{node_name(configuration)}",
            organization=project.node_organization,
            usage=kadm.tls.crypto.CertificateUsage.CLIENT,
            certificate_authority_keypair=certificate_authority,
            validity=validity,
        ),
        SERVICE_ACCOUNT_ASSET: generate_service_account_key,
    }

    logger.info("Issuing control plane certificates...")
    with concurrent.futures.ThreadPoolExecutor(max_workers=len(leaf_requests)) as executor:
        futures = {name: executor.submit(f) for name, f in leaf_requests.items()}
        leaves = {name: future.result() for name, future in futures.items()}

    for name in (APISERVER_ASSET, ADMIN_ASSET, KUBELET_ASSET):
        write_keypair(
            pki_directory,
            name,
            private_key=leaves[name].private_key,
            certificate=leaves[name].certificate,
        )
    write_keypair(
        pki_directory, SERVICE_ACCOUNT_ASSET, private_key=leaves[SERVICE_ACCOUNT_ASSET]
    )

    return KubernetesPublicKeyInfrastructure(
        certificate_authority=certificate_authority,
        apiserver_keypair=leaves[APISERVER_ASSET],
        service_account_key=leaves[SERVICE_ACCOUNT_ASSET],
        admin_keypair=leaves[ADMIN_ASSET],
        kubelet_keypair=leaves[KUBELET_ASSET],
    )


def control_plane_server_url(configuration: kadm.configuration.ClusterConfiguration) -> str:
    """
    URL clients on the control plane host use to reach the API server. The
    host must be one of the API server certificate's alternative names, so
    listen_ip or api_server_dns_name has to be configured.
    """
    host = configuration.listen_ip or configuration.api_server_dns_name
    if not host:
        raise kadm.errors.ConfigurationError(
            "listen_ip or api_server_dns_name is required to write client configurations"
        )
    return str(
        yarl.URL.build(scheme="https", host=host, port=configuration.api_server_port)
    )


def write_control_plane_client_configurations(
    configuration: kadm.configuration.ClusterConfiguration,
    pki: KubernetesPublicKeyInfrastructure,
) -> typing.Dict[str, pathlib.Path]:
    """
    Write admin.conf and kubelet.conf for the control plane host. Returns the
    written paths keyed by identity.
    """
    project = kadm.configuration.project.ProjectConfiguration
    configuration_directory = kadm.utility.ensure_directory(configuration.configuration_path)
    ca_certificate = kadm.tls.crypto.serialize_certificate(
        pki.certificate_authority.certificate
    )
    server_url = control_plane_server_url(configuration)

    user_names = {
        ADMIN_ASSET: project.admin_common_name,
        KUBELET_ASSET: f"{project.node_user_prefix}{node_name(configuration)}",
    }
    keypairs = {ADMIN_ASSET: pki.admin_keypair, KUBELET_ASSET: pki.kubelet_keypair}

    paths = {}
    for name, keypair in keypairs.items():
        serialized = kadm.tls.crypto.serialize_keypair(keypair)
        identity = kadm.kubernetes.kubeconfig.ClientIdentity(
            cluster_name=configuration.cluster_name,
            server_url=server_url,
            ca_certificate=ca_certificate,
            client_key=serialized.private_key,
            client_certificate=serialized.certificate,
            user_name=user_names[name],
            context_name=kadm.kubernetes.kubeconfig.context_name(
                user_name=user_names[name], cluster_name=configuration.cluster_name
            ),
        )
        path = configuration_directory.joinpath(f"{name}.conf")
        kadm.kubernetes.kubeconfig.write_client_configuration(
            path, kadm.kubernetes.kubeconfig.client_configuration_from_identity(identity)
        )
        paths[name] = path
    return paths
