#!/usr/bin/env python3
#
# This is the CLI entrypoint. It parses arguments and runs the various
# subcommands.

import argparse
import dataclasses
import enum
import kadm.bootstrap.tokens
import kadm.configuration
import kadm.discovery
import kadm.errors
import kadm.kubelet
import kadm.logging
import kadm.tls.pki
import os
import signal
import sys
import typing

logger = kadm.logging.get_logger(__name__)

CONFIGURATION_VARIABLE = "KADM_CONFIG"
TOKEN_VARIABLE = "KADM_TOKEN"


class Action(enum.Enum):
    "Enumerates the things this CLI tool can do."
    GENERATE_TOKEN = enum.auto()
    INITIALIZE_CONTROL_PLANE = enum.auto()
    JOIN_NODE = enum.auto()


def _parse_arguments(argv: typing.Optional[typing.List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Bootstrap Kubernetes cluster membership")

    subparsers = parser.add_subparsers()
    subparsers.required = True

    token_parser = subparsers.add_parser("token", help="Generate a bootstrap token")
    token_parser.set_defaults(action=Action.GENERATE_TOKEN)

    init_parser = subparsers.add_parser(
        "init", help="Generate the control plane PKI and client configurations"
    )
    init_parser.set_defaults(action=Action.INITIALIZE_CONTROL_PLANE)

    join_parser = subparsers.add_parser(
        "join", help="Join this node to a cluster using a bootstrap token"
    )
    join_parser.add_argument(
        "--token",
        default=os.getenv(TOKEN_VARIABLE),
        help=f"Bootstrap token <id>.<secret> (default: ${TOKEN_VARIABLE})",
    )
    join_parser.add_argument(
        "--api-server-urls", help="Comma separated API server URLs"
    )
    join_parser.add_argument(
        "--ca-cert-file", help="Path to the cluster CA certificate"
    )
    join_parser.add_argument(
        "--node-name", help="Name to register this node as (default: hostname)"
    )
    join_parser.set_defaults(action=Action.JOIN_NODE)

    return parser.parse_args(argv)


def _load_configuration() -> kadm.configuration.ClusterConfiguration:
    configuration_path = os.getenv(CONFIGURATION_VARIABLE)
    if not configuration_path:
        logger.info(f"{CONFIGURATION_VARIABLE} not defined, using defaults...")
        return kadm.configuration.cluster_configuration_from_dict({})

    logger.info(f"Loading configuration from {configuration_path}...")
    try:
        with open(configuration_path) as f:
            return kadm.configuration.load_cluster_configuration(f)
    except OSError as e:
        raise kadm.errors.AssetIOError(
            f"unable to read {configuration_path}: {e}"
        ) from e


def _discovery_configuration(
    configuration: kadm.configuration.ClusterConfiguration,
    arguments: argparse.Namespace,
) -> kadm.configuration.DiscoveryConfiguration:
    "Command line discovery inputs win over the configuration file"
    if arguments.api_server_urls or arguments.ca_cert_file:
        if not (arguments.api_server_urls and arguments.ca_cert_file):
            raise kadm.errors.ConfigurationError(
                "--api-server-urls and --ca-cert-file must be given together"
            )
        return kadm.configuration.OutOfBandDiscoveryConfiguration(
            api_server_urls=arguments.api_server_urls,
            ca_certificate_path=arguments.ca_cert_file,
        )
    if configuration.discovery is None:
        raise kadm.errors.ConfigurationError(
            "no discovery configured; pass --api-server-urls and --ca-cert-file"
        )
    return configuration.discovery


def _initialize_control_plane(configuration: kadm.configuration.ClusterConfiguration) -> None:
    server_url = kadm.tls.pki.control_plane_server_url(configuration)
    logger.info(f"Control plane clients will use {server_url}")

    logger.info("Generating control plane PKI...")
    pki = kadm.tls.pki.generate_control_plane_pki(configuration)

    logger.info("Writing client configurations...")
    paths = kadm.tls.pki.write_control_plane_client_configurations(configuration, pki)
    for name, path in paths.items():
        logger.info(f"Wrote {name} client configuration to {path}")

    token = kadm.bootstrap.tokens.generate_token()
    logger.info("Control plane initialized! Join nodes with the following token:")
    print(token)


def _join_node(
    configuration: kadm.configuration.ClusterConfiguration,
    arguments: argparse.Namespace,
) -> None:
    if not arguments.token:
        raise kadm.errors.ConfigurationError(
            f"a bootstrap token is required; pass --token or set {TOKEN_VARIABLE}"
        )
    token = kadm.bootstrap.tokens.validate_token(arguments.token)
    if arguments.node_name:
        configuration = dataclasses.replace(configuration, node_name=arguments.node_name)

    provider = kadm.discovery.create_discovery_provider(
        _discovery_configuration(configuration, arguments)
    )
    machine = kadm.kubelet.KubeletJoinStateMachine(
        context=kadm.kubelet.JoinContext(
            configuration=configuration,
            discovery_provider=provider,
            token=token,
        )
    )

    def handle_termination(signum, frame):
        logger.warning(f"Received signal {signum}, cancelling join...")
        machine.cancel()

    signal.signal(signal.SIGTERM, handle_termination)
    machine.run()
    logger.info(
        f"Node joined! Client configuration written to "
        f"{kadm.kubelet.node_configuration_path(configuration)}"
    )


def main(argv: typing.Optional[typing.List[str]] = None) -> None:
    arguments = _parse_arguments(argv)

    try:
        if arguments.action == Action.GENERATE_TOKEN:
            print(kadm.bootstrap.tokens.generate_token())
            return

        configuration = _load_configuration()
        if arguments.action == Action.INITIALIZE_CONTROL_PLANE:
            _initialize_control_plane(configuration)
        elif arguments.action == Action.JOIN_NODE:
            _join_node(configuration, arguments)
        else:
            logger.error(f"{arguments.action} is not a valid command")
            sys.exit(1)
    except kadm.errors.KadmError as e:
        logger.error(f"{type(e).__name__}: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
