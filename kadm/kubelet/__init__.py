#!/usr/bin/env python3
#
# This package drives a node from "has a token" to "has a durable identity".
# The join is an explicit state machine: each state has a transition function
# which returns the next state, the updated join context and the side effects
# to run before the new state is entered. States only move forward.

import dataclasses
import enum
import kadm.bootstrap.csr
import kadm.bootstrap.tokens
import kadm.configuration
import kadm.discovery
import kadm.errors
import kadm.kubernetes.kubeconfig
import kadm.logging
import kadm.tls.pki
import kadm.utility
import pathlib
import threading
import typing

logger = kadm.logging.get_logger(__name__)

NODE_CLIENT_ASSET = "kubelet-client"
NODE_CONFIGURATION_NAME = "kubelet.conf"
MAXIMUM_BACKOFF_SECONDS = 60.0

SideEffect = typing.Callable[[], None]


class JoinState(enum.IntEnum):
    PENDING = 0
    DISCOVERING = 1
    BOOTSTRAPPING = 2
    RUNNING = 3


@dataclasses.dataclass(frozen=True)
class JoinContext:
    "Everything the join has learned so far"
    configuration: kadm.configuration.ClusterConfiguration
    discovery_provider: typing.Optional[kadm.discovery.DiscoveryProvider] = None
    token: typing.Optional[kadm.bootstrap.tokens.BootstrapToken] = None
    discovery_result: typing.Optional[kadm.discovery.DiscoveryResult] = None
    identity: typing.Optional[kadm.kubernetes.kubeconfig.ClientIdentity] = None


@dataclasses.dataclass(frozen=True)
class Transition:
    next_state: JoinState
    context: JoinContext
    side_effects: typing.Tuple[SideEffect, ...] = ()


def node_configuration_path(
    configuration: kadm.configuration.ClusterConfiguration,
) -> pathlib.Path:
    return configuration.configuration_path.joinpath(NODE_CONFIGURATION_NAME)


def write_node_identity(
    configuration: kadm.configuration.ClusterConfiguration,
    identity: kadm.kubernetes.kubeconfig.ClientIdentity,
) -> pathlib.Path:
    """
    Persist the node's identity: the key and certificate as PEM in the PKI
    directory, then kubelet.conf in the configuration directory. kubelet.conf
    marks a joined node, so it is written last and created exclusively; an
    existing node configuration is never replaced.
    """
    pki_directory = kadm.utility.ensure_directory(configuration.pki_path)
    kadm.utility.write_file_atomically(
        kadm.tls.pki.private_key_path(pki_directory, NODE_CLIENT_ASSET),
        identity.client_key,
        mode=0o600,
    )
    kadm.utility.write_file_atomically(
        kadm.tls.pki.certificate_path(pki_directory, NODE_CLIENT_ASSET),
        identity.client_certificate,
    )

    path = node_configuration_path(configuration)
    kadm.utility.ensure_directory(configuration.configuration_path)
    kadm.kubernetes.kubeconfig.write_client_configuration(
        path,
        kadm.kubernetes.kubeconfig.client_configuration_from_identity(identity),
        exclusive=True,
    )
    return path


def create_bootstrap_client(context: JoinContext) -> kadm.bootstrap.csr.BootstrapClient:
    "A client against the first discovered API server"
    configuration = context.configuration
    result = context.discovery_result
    if result is None or context.token is None:
        raise kadm.errors.InvalidTransitionError(
            "bootstrap requires discovery results and a token"
        )
    return kadm.bootstrap.csr.BootstrapClient(
        cluster_name=configuration.cluster_name,
        server_url=result.api_server_urls[0],
        trust_anchor=result.trust_anchor,
        token=context.token,
        node_name=kadm.tls.pki.node_name(configuration),
        timeout_seconds=configuration.approval_timeout_seconds,
    )


def transition_from_pending(context: JoinContext) -> Transition:
    """
    Start discovery once a provider and a token are present. A node which
    already has a kubelet.conf has joined and must not join again.
    """
    if context.discovery_provider is None:
        raise kadm.errors.ConfigurationError("a discovery provider is required to join")
    if context.token is None:
        raise kadm.errors.ConfigurationError("a bootstrap token is required to join")
    path = node_configuration_path(context.configuration)
    if path.exists():
        raise kadm.errors.ConfigurationError(
            f"{path} already exists; this node has already joined"
        )
    return Transition(
        next_state=JoinState.DISCOVERING,
        context=context,
        side_effects=(context.discovery_provider.start,),
    )


def transition_from_discovering(context: JoinContext) -> Transition:
    assert context.discovery_provider is not None
    result = context.discovery_provider.discover()
    logger.info(f"Discovered API servers {', '.join(result.api_server_urls)}")
    return Transition(
        next_state=JoinState.BOOTSTRAPPING,
        context=dataclasses.replace(context, discovery_result=result),
    )


def transition_from_bootstrapping(
    context: JoinContext,
    *,
    bootstrap: typing.Callable[[JoinContext], kadm.kubernetes.kubeconfig.ClientIdentity],
    sleep: typing.Callable[[float], typing.Any],
) -> Transition:
    """
    Run the TLS bootstrap. Transient protocol failures are retried up to the
    configured number of attempts with exponential backoff; everything else,
    including a denial, propagates immediately.
    """
    configuration = context.configuration
    attempts = configuration.join_attempts
    delay = configuration.join_backoff_seconds
    for attempt in range(1, attempts + 1):
        try:
            identity = bootstrap(context)
            break
        except kadm.errors.TransientProtocolError as e:
            if attempt == attempts:
                logger.error(f"Giving up after {attempts} join attempts")
                raise
            logger.warning(
                f"Join attempt {attempt} of {attempts} failed: {e}. "
                f"Retrying in {delay:.1f}s..."
            )
            sleep(delay)
            delay = min(delay * 2, MAXIMUM_BACKOFF_SECONDS)

    return Transition(
        next_state=JoinState.RUNNING,
        context=dataclasses.replace(context, identity=identity),
        side_effects=(lambda: write_node_identity(configuration, identity),),
    )


class KubeletJoinStateMachine:
    """
    Drives a join context through PENDING, DISCOVERING, BOOTSTRAPPING and
    RUNNING. RUNNING is terminal.

    cancel() may be called from another thread. It aborts a running TLS
    bootstrap and any backoff wait.
    """

    def __init__(
        self,
        *,
        context: JoinContext,
        client_factory: typing.Callable[
            [JoinContext], kadm.bootstrap.csr.BootstrapClient
        ] = create_bootstrap_client,
        sleep: typing.Optional[typing.Callable[[float], typing.Any]] = None,
    ):
        self.__state = JoinState.PENDING
        self.__context = context
        self.__client_factory = client_factory
        self.__cancelled = threading.Event()
        self.__sleep = sleep or self.__cancelled.wait
        # Reentrant: cancel() may run in a signal handler on the thread holding it
        self.__lock = threading.RLock()
        self.__client: typing.Optional[kadm.bootstrap.csr.BootstrapClient] = None

    @property
    def state(self) -> JoinState:
        return self.__state

    @property
    def context(self) -> JoinContext:
        return self.__context

    def cancel(self) -> None:
        with self.__lock:
            self.__cancelled.set()
            client = self.__client
        if client is not None:
            client.cancel()

    def __bootstrap(self, context: JoinContext) -> kadm.kubernetes.kubeconfig.ClientIdentity:
        client = self.__client_factory(context)
        with self.__lock:
            self.__client = client
            if self.__cancelled.is_set():
                client.cancel()
        try:
            return client.run()
        finally:
            with self.__lock:
                self.__client = None

    def __transition(self) -> Transition:
        if self.__state == JoinState.PENDING:
            return transition_from_pending(self.__context)
        if self.__state == JoinState.DISCOVERING:
            return transition_from_discovering(self.__context)
        if self.__state == JoinState.BOOTSTRAPPING:
            return transition_from_bootstrapping(
                self.__context, bootstrap=self.__bootstrap, sleep=self.__sleep
            )
        raise kadm.errors.InvalidTransitionError(f"{self.__state.name} is terminal")

    def apply(self, transition: Transition) -> None:
        "Run the transition's side effects and enter its next state"
        if transition.next_state <= self.__state:
            raise kadm.errors.InvalidTransitionError(
                f"cannot move from {self.__state.name} to {transition.next_state.name}"
            )
        for side_effect in transition.side_effects:
            side_effect()
        logger.info(f"Join state {self.__state.name} -> {transition.next_state.name}")
        self.__state = transition.next_state
        self.__context = transition.context

    def step(self) -> JoinState:
        if self.__cancelled.is_set():
            raise kadm.errors.BootstrapCancelledError("join was cancelled")
        self.apply(self.__transition())
        return self.__state

    def run(self) -> kadm.kubernetes.kubeconfig.ClientIdentity:
        while self.__state != JoinState.RUNNING:
            self.step()
        assert self.__context.identity is not None
        return self.__context.identity


def run_join_state_machine(
    context: JoinContext, **kwargs
) -> kadm.kubernetes.kubeconfig.ClientIdentity:
    return KubeletJoinStateMachine(context=context, **kwargs).run()
