#!/usr/bin/env python3
#
# This module builds client configuration ("kubeconfig") documents. Each
# builder returns a new dict; nothing is mutated in place.

import base64
import copy
import dataclasses
import kadm.errors
import kadm.logging
import kadm.utility
import pathlib
import typing
import yaml

logger = kadm.logging.get_logger(__name__)


@dataclasses.dataclass(frozen=True)
class ClientIdentity:
    """
    A durable TLS client identity: the cluster's trust anchor, a locally held
    private key and the certificate issued for it. Built once and never
    modified.
    """

    cluster_name: str
    server_url: str
    ca_certificate: bytes
    client_key: bytes
    client_certificate: bytes
    user_name: str
    context_name: str


def context_name(*, user_name: str, cluster_name: str) -> str:
    return f"{user_name}@{cluster_name}"


def _encode(data: bytes) -> str:
    return base64.b64encode(data).decode()


def create_basic_client_configuration(
    cluster_name: str, server_url: str, ca_certificate: bytes
) -> dict:
    "A configuration which trusts only the given CA and has no credentials yet"
    # https://kubernetes.io/docs/concepts/configuration/organize-cluster-access-kubeconfig/
    return {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [
            {
                "name": cluster_name,
                "cluster": {
                    "server": server_url,
                    "certificate-authority-data": _encode(ca_certificate),
                },
            }
        ],
        "users": [],
        "contexts": [],
        "current-context": "",
    }


def _with_user(
    configuration: dict, *, cluster_name: str, user_name: str, user: dict
) -> dict:
    new_configuration = copy.deepcopy(configuration)
    name = context_name(user_name=user_name, cluster_name=cluster_name)
    new_configuration["users"] = [{"name": user_name, "user": user}]
    new_configuration["contexts"] = [
        {"name": name, "context": {"cluster": cluster_name, "user": user_name}}
    ]
    new_configuration["current-context"] = name
    return new_configuration


def make_client_configuration_with_token(
    configuration: dict, *, cluster_name: str, user_name: str, token: str
) -> dict:
    return _with_user(
        configuration,
        cluster_name=cluster_name,
        user_name=user_name,
        user={"token": token},
    )


def make_client_configuration_with_certificates(
    configuration: dict,
    *,
    cluster_name: str,
    user_name: str,
    client_key: bytes,
    client_certificate: bytes,
) -> dict:
    return _with_user(
        configuration,
        cluster_name=cluster_name,
        user_name=user_name,
        user={
            "client-certificate-data": _encode(client_certificate),
            "client-key-data": _encode(client_key),
        },
    )


def client_configuration_from_identity(identity: ClientIdentity) -> dict:
    return make_client_configuration_with_certificates(
        create_basic_client_configuration(
            identity.cluster_name, identity.server_url, identity.ca_certificate
        ),
        cluster_name=identity.cluster_name,
        user_name=identity.user_name,
        client_key=identity.client_key,
        client_certificate=identity.client_certificate,
    )


def current_entries(configuration: dict) -> typing.Tuple[str, dict, dict, dict]:
    """
    Resolve the current context of a configuration document. Returns the
    context name and the context, cluster and user entries it selects.
    Raises KeyError or StopIteration when an entry is missing.
    """
    current = configuration["current-context"]
    context = next(
        c["context"] for c in configuration["contexts"] if c["name"] == current
    )
    cluster = next(
        c["cluster"] for c in configuration["clusters"] if c["name"] == context["cluster"]
    )
    user = next(
        u["user"] for u in configuration["users"] if u["name"] == context["user"]
    )
    return current, context, cluster, user


def identity_from_client_configuration(configuration: dict) -> ClientIdentity:
    """
    Recover the identity selected by the current context of a configuration
    produced by client_configuration_from_identity(). Raises
    ConfigurationError if the document lacks any of the required entries.
    """
    try:
        current, context, cluster, user = current_entries(configuration)
        return ClientIdentity(
            cluster_name=context["cluster"],
            server_url=cluster["server"],
            ca_certificate=base64.b64decode(cluster["certificate-authority-data"]),
            client_key=base64.b64decode(user["client-key-data"]),
            client_certificate=base64.b64decode(user["client-certificate-data"]),
            user_name=context["user"],
            context_name=current,
        )
    except (KeyError, StopIteration, TypeError, ValueError) as e:
        raise kadm.errors.ConfigurationError(
            f"client configuration is incomplete: {e!r}"
        ) from e


def dump_client_configuration(configuration: dict) -> str:
    return yaml.safe_dump(configuration, default_flow_style=False, sort_keys=False)


def write_client_configuration(
    path: pathlib.Path, configuration: dict, *, exclusive: bool = False
) -> None:
    """
    Write a configuration file readable only by its owner. When exclusive is
    set, an existing file is never overwritten.
    """
    logger.info(f"Writing {path}...")
    data = dump_client_configuration(configuration)
    if exclusive:
        kadm.utility.write_file_exclusively(path, data, mode=0o600)
    else:
        kadm.utility.write_file_atomically(path, data, mode=0o600)


def load_client_configuration(path: typing.Union[str, pathlib.Path]) -> dict:
    try:
        configuration = yaml.safe_load(kadm.utility.read_file(path))
    except yaml.YAMLError as e:
        raise kadm.errors.ConfigurationError(f"unable to parse {path}: {e}") from e
    if not isinstance(configuration, dict):
        raise kadm.errors.ConfigurationError(f"{path} is not a client configuration")
    return configuration
