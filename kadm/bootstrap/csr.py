#!/usr/bin/env python3
#
# This module implements the TLS bootstrap of a joining node: it trades a
# short-lived bootstrap token for a durable client certificate by submitting a
# certificate signing request to the approval authority and waiting for a
# decision.

import kadm.bootstrap.approval
import kadm.bootstrap.tokens
import kadm.configuration.project
import kadm.errors
import kadm.kubernetes.kubeconfig
import kadm.logging
import kadm.tls.crypto
import threading
import time
import typing

logger = kadm.logging.get_logger(__name__)

ApprovalAuthorityFactory = typing.Callable[
    [dict], kadm.bootstrap.approval.ApprovalAuthority
]

DEFAULT_TIMEOUT_SECONDS = 3600


def node_user_name(node_name: str) -> str:
    "Name of the client configuration user for a node's identities"
    return f"{kadm.configuration.project.ProjectConfiguration.kubelet_user_prefix}{node_name}"


def check_decision(
    record: kadm.bootstrap.approval.SigningRequestRecord,
) -> typing.Optional[bytes]:
    """
    Evaluate one observed state of a signing request. Returns the issued
    certificate once the request is approved and signed, None while it is
    pending. A denial wins over an approval recorded on the same record and
    raises SigningRequestDeniedError.
    """
    approved = False
    for condition in record.conditions:
        if condition.type == kadm.bootstrap.approval.DENIED:
            raise kadm.errors.SigningRequestDeniedError(
                record.name, reason=condition.reason, message=condition.message
            )
        if condition.type == kadm.bootstrap.approval.APPROVED:
            approved = True

    if record.certificate:
        if not approved:
            logger.warning(
                f"Certificate signing request {record.name} has a certificate without "
                "an approval condition, accepting it..."
            )
        return record.certificate

    if approved:
        logger.info(
            f"Certificate signing request {record.name} approved, waiting for signature..."
        )
    return None


class BootstrapClient:
    """
    Runs the signing request exchange for one node. A client is used for a
    single attempt: build the bootstrap configuration, generate a key, submit
    a request, await the decision and build the final identity. The record it
    submits is deleted on every exit path, including failures and
    cancellation.

    cancel() may be called from another thread (e.g. a signal handler) and
    makes a blocked await_decision() raise BootstrapCancelledError.
    """

    def __init__(
        self,
        *,
        cluster_name: str,
        server_url: str,
        trust_anchor: bytes,
        token: kadm.bootstrap.tokens.BootstrapToken,
        node_name: str,
        approval_authority_factory: typing.Optional[ApprovalAuthorityFactory] = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        clock: typing.Callable[[], float] = time.monotonic,
    ):
        self.__cluster_name = cluster_name
        self.__server_url = server_url
        self.__trust_anchor = trust_anchor
        self.__token = token
        self.__node_name = node_name
        self.__approval_authority_factory = (
            approval_authority_factory
            or kadm.bootstrap.approval.kubernetes_approval_authority
        )
        self.__timeout_seconds = timeout_seconds
        self.__clock = clock

        self.__approval_authority: typing.Optional[
            kadm.bootstrap.approval.ApprovalAuthority
        ] = None
        self.__private_key: typing.Optional[kadm.tls.crypto.PrivateKey] = None
        self.__cancelled = threading.Event()
        # Reentrant: cancel() may run in a signal handler on the thread holding it
        self.__lock = threading.RLock()
        self.__watch: typing.Optional[kadm.bootstrap.approval.SigningRequestWatch] = None

    @property
    def user_name(self) -> str:
        return node_user_name(self.__node_name)

    @property
    def cancelled(self) -> bool:
        return self.__cancelled.is_set()

    def cancel(self) -> None:
        logger.info("Cancelling TLS bootstrap...")
        with self.__lock:
            self.__cancelled.set()
            watch = self.__watch
        if watch is not None:
            watch.close()

    def __raise_if_cancelled(self) -> None:
        if self.__cancelled.is_set():
            raise kadm.errors.BootstrapCancelledError("TLS bootstrap was cancelled")

    def build_bare_configuration(self) -> dict:
        "A client configuration which trusts the cluster CA and carries the bootstrap token"
        return kadm.kubernetes.kubeconfig.make_client_configuration_with_token(
            kadm.kubernetes.kubeconfig.create_basic_client_configuration(
                self.__cluster_name, self.__server_url, self.__trust_anchor
            ),
            cluster_name=self.__cluster_name,
            user_name=self.user_name,
            token=self.__token.bearer_token,
        )

    def generate_key(self) -> kadm.tls.crypto.PrivateKey:
        logger.info("Generating node private key...")
        self.__private_key = kadm.tls.crypto.generate_private_key()
        return self.__private_key

    def __authority(self) -> kadm.bootstrap.approval.ApprovalAuthority:
        if self.__approval_authority is None:
            self.__approval_authority = self.__approval_authority_factory(
                self.build_bare_configuration()
            )
        return self.__approval_authority

    def submit(self) -> kadm.bootstrap.approval.SigningRequestRecord:
        """
        Create a signing request for the node's client identity. The private
        key never leaves this process; only the request is sent.
        """
        if self.__private_key is None:
            raise kadm.errors.ProtocolError("generate_key() must be called before submit()")
        self.__raise_if_cancelled()

        project = kadm.configuration.project.ProjectConfiguration
        # https://kubernetes.io/docs/reference/access-authn-authz/node/
        request = kadm.tls.crypto.generate_certificate_signing_request(
            self.__private_key,
            common_name=f"{project.node_user_prefix}{self.__node_name}",
            organization=project.node_organization,
        )
        logger.info(f"Submitting certificate signing request for node {self.__node_name}...")
        record = self.__authority().create(
            request=kadm.tls.crypto.serialize_certificate_signing_request(request)
        )
        logger.info(f"Created certificate signing request {record.name}...")
        return record

    def await_decision(self, name: str) -> bytes:
        """
        Wait for the named request to be decided and return the issued PEM
        certificate. The current state is read once before subscribing, so a
        decision made before the subscription started is not missed.

        Raises SigningRequestDeniedError on denial, BootstrapTimeoutError once
        the deadline passes, WatchClosedError if the subscription ends early
        and BootstrapCancelledError after cancel().
        """
        deadline = self.__clock() + self.__timeout_seconds
        authority = self.__authority()

        try:
            certificate = check_decision(authority.get(name))
        except kadm.errors.SigningRequestDeniedError:
            raise
        except kadm.errors.ProtocolError as e:
            # The watch below observes the record as well
            logger.warning(f"Unable to read certificate signing request {name}: {e}")
            certificate = None
        if certificate is not None:
            return certificate

        remaining = deadline - self.__clock()
        if remaining <= 0:
            raise kadm.errors.BootstrapTimeoutError(
                name, timeout_seconds=self.__timeout_seconds
            )

        logger.info(f"Waiting up to {remaining:.0f}s for a decision on {name}...")
        watch = authority.watch(name, timeout_seconds=remaining)
        with self.__lock:
            self.__watch = watch
        try:
            self.__raise_if_cancelled()
            try:
                certificate = self.__follow(watch, name, deadline)
            except kadm.errors.WatchClosedError as e:
                self.__raise_if_cancelled()
                # Read timeouts past the deadline surface as a closed stream
                if self.__clock() >= deadline:
                    raise kadm.errors.BootstrapTimeoutError(
                        name, timeout_seconds=self.__timeout_seconds
                    ) from e
                raise
            if certificate is not None:
                return certificate
        finally:
            with self.__lock:
                self.__watch = None
            watch.close()

        self.__raise_if_cancelled()
        if self.__clock() >= deadline:
            raise kadm.errors.BootstrapTimeoutError(
                name, timeout_seconds=self.__timeout_seconds
            )
        raise kadm.errors.WatchClosedError(f"watch on {name} ended before a decision")

    def __follow(
        self,
        watch: kadm.bootstrap.approval.SigningRequestWatch,
        name: str,
        deadline: float,
    ) -> typing.Optional[bytes]:
        for event in watch:
            self.__raise_if_cancelled()
            if event.type == kadm.bootstrap.approval.WatchEventType.ERROR:
                raise kadm.errors.WatchClosedError(f"watch on {name} failed: {event.message}")
            if event.record is None or event.record.name != name:
                continue
            if event.type == kadm.bootstrap.approval.WatchEventType.DELETED:
                raise kadm.errors.ProtocolError(
                    f"certificate signing request {name} was deleted before a decision"
                )
            certificate = check_decision(event.record)
            if certificate is not None:
                return certificate
            if self.__clock() >= deadline:
                break
        return None

    def __delete(self, name: str) -> None:
        logger.info(f"Deleting certificate signing request {name}...")
        try:
            self.__authority().delete(name)
        except kadm.errors.KadmError as e:
            logger.warning(f"Unable to delete certificate signing request {name}: {e}")

    def request_certificate(self) -> bytes:
        """
        Submit a request and wait for its certificate. The submitted record is
        deleted exactly once whatever the outcome.
        """
        record = self.submit()
        try:
            return self.await_decision(record.name)
        finally:
            self.__delete(record.name)

    def build_final_configuration(
        self, certificate: bytes
    ) -> kadm.kubernetes.kubeconfig.ClientIdentity:
        """
        Combine the issued certificate with the locally generated key. The
        certificate must be for this key and must chain to the trust anchor.
        """
        if self.__private_key is None:
            raise kadm.errors.ProtocolError("no private key has been generated")
        try:
            keypair = kadm.tls.crypto.Keypair(
                private_key=self.__private_key,
                certificate=kadm.tls.crypto.load_certificate(certificate),
            )
            kadm.tls.crypto.verify_certificate_chain(
                keypair.certificate, kadm.tls.crypto.load_certificate(self.__trust_anchor)
            )
        except kadm.errors.CryptoError as e:
            raise kadm.errors.ProtocolError(f"issued certificate is not usable: {e}") from e
        if (
            keypair.certificate.public_key().public_numbers()
            != self.__private_key.public_key().public_numbers()
        ):
            raise kadm.errors.ProtocolError("issued certificate does not match the node key")

        serialized = kadm.tls.crypto.serialize_keypair(keypair)
        return kadm.kubernetes.kubeconfig.ClientIdentity(
            cluster_name=self.__cluster_name,
            server_url=self.__server_url,
            ca_certificate=self.__trust_anchor,
            client_key=serialized.private_key,
            client_certificate=serialized.certificate,
            user_name=self.user_name,
            context_name=kadm.kubernetes.kubeconfig.context_name(
                user_name=self.user_name, cluster_name=self.__cluster_name
            ),
        )

    def run(self) -> kadm.kubernetes.kubeconfig.ClientIdentity:
        "Perform the whole exchange and return the node's durable identity"
        self.generate_key()
        try:
            certificate = self.request_certificate()
        finally:
            if self.__approval_authority is not None:
                self.__approval_authority.close()
        logger.info(f"Received client certificate for node {self.__node_name}")
        return self.build_final_configuration(certificate)


def perform_tls_bootstrap(
    *,
    api_server_urls: typing.List[str],
    trust_anchor: bytes,
    token: kadm.bootstrap.tokens.BootstrapToken,
    node_name: str,
    cluster_name: str,
    approval_authority_factory: typing.Optional[ApprovalAuthorityFactory] = None,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
) -> kadm.kubernetes.kubeconfig.ClientIdentity:
    """
    Trade the bootstrap token for the node's client identity using the first
    discovered API server. Other endpoints are not tried.
    """
    if not api_server_urls:
        raise kadm.errors.ConfigurationError("no API server URL to bootstrap against")
    client = BootstrapClient(
        cluster_name=cluster_name,
        server_url=api_server_urls[0],
        trust_anchor=trust_anchor,
        token=token,
        node_name=node_name,
        approval_authority_factory=approval_authority_factory,
        timeout_seconds=timeout_seconds,
    )
    return client.run()
