import dataclasses
import datetime
import threading
import time

import pytest

import kadm.bootstrap.approval
import kadm.bootstrap.csr
import kadm.bootstrap.tokens
import kadm.configuration
import kadm.tls.crypto

EXAMPLE_TOKEN = "a1b2c3.0011223344556677"
SERVER_URL = "https://10.0.0.1:6443"
NODE_NAME = "node-1"

# ----------------- Fakes for the approval authority -----------------


class FakeWatch(kadm.bootstrap.approval.SigningRequestWatch):
    """
    Yields a fixed list of events. With block=True it then waits until
    close() is called, like a server-side watch which has nothing to report.
    With error set it then raises it, like a stream which was cut off.
    """

    def __init__(self, events, *, block=False, error=None):
        self.events = list(events)
        self.block = block
        self.error = error
        self.closed = threading.Event()

    def __iter__(self):
        for event in self.events:
            if self.closed.is_set():
                return
            yield event
        if self.block:
            self.closed.wait(timeout=5)
        if self.error is not None:
            raise self.error

    def close(self):
        self.closed.set()


class FakeApprovalAuthority(kadm.bootstrap.approval.ApprovalAuthority):
    """
    In-memory record store. on_get and on_watch let a test decide what the
    authority reports for a record: on_get(authority, record) returns the
    record seen by the point-read, on_watch(authority, record) returns the
    events of the subscription.
    """

    def __init__(
        self,
        certificate_authority,
        *,
        on_get=None,
        on_watch=None,
        block_watch=False,
        get_error=None,
        watch_error=None,
        delete_error=None,
    ):
        self.certificate_authority = certificate_authority
        self.records = {}
        self.created = []
        self.deleted = []
        self.watches = []
        self.closed = False
        self.on_get = on_get or (lambda authority, record: record)
        self.on_watch = on_watch or (lambda authority, record: [])
        self.block_watch = block_watch
        self.get_error = get_error
        self.watch_error = watch_error
        self.delete_error = delete_error

    def create(self, *, request):
        name = f"csr-{len(self.created) + 1:05d}"
        record = kadm.bootstrap.approval.SigningRequestRecord(name=name, request=request)
        self.records[name] = record
        self.created.append(name)
        return record

    def get(self, name):
        if self.get_error is not None:
            raise self.get_error
        self.records[name] = self.on_get(self, self.records[name])
        return self.records[name]

    def watch(self, name, *, timeout_seconds):
        watch = FakeWatch(
            self.on_watch(self, self.records[name]),
            block=self.block_watch,
            error=self.watch_error,
        )
        self.watches.append((name, timeout_seconds, watch))
        return watch

    def delete(self, name):
        self.deleted.append(name)
        if self.delete_error is not None:
            raise self.delete_error
        self.records.pop(name, None)

    def close(self):
        self.closed = True

    # Helpers which play the part of an administrator and the signer

    def sign(self, record):
        certificate = kadm.tls.crypto.sign_certificate_signing_request(
            kadm.tls.crypto.load_certificate_signing_request(record.request),
            usage=kadm.tls.crypto.CertificateUsage.CLIENT,
            certificate_authority_keypair=self.certificate_authority,
            validity=datetime.timedelta(days=1),
        )
        return kadm.tls.crypto.serialize_certificate(certificate)

    def approve(self, record, *, signed=True):
        return dataclasses.replace(
            record,
            conditions=record.conditions
            + (
                kadm.bootstrap.approval.SigningRequestCondition(
                    type=kadm.bootstrap.approval.APPROVED,
                    reason="AutoApproved",
                    message="approved by test",
                ),
            ),
            certificate=self.sign(record) if signed else None,
        )

    def deny(self, record, *, reason="Rejected", message="node is not allowed"):
        return dataclasses.replace(
            record,
            conditions=record.conditions
            + (
                kadm.bootstrap.approval.SigningRequestCondition(
                    type=kadm.bootstrap.approval.DENIED, reason=reason, message=message
                ),
            ),
        )

    @staticmethod
    def modified(record):
        return kadm.bootstrap.approval.WatchEvent(
            type=kadm.bootstrap.approval.WatchEventType.MODIFIED, record=record
        )


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


# ----------------- Fixtures -----------------


@pytest.fixture(scope="session")
def certificate_authority():
    return kadm.tls.crypto.generate_root_certificate_authority(
        "kubernetes", validity=datetime.timedelta(days=1)
    )


@pytest.fixture
def trust_anchor(certificate_authority):
    return kadm.tls.crypto.serialize_certificate(certificate_authority.certificate)


@pytest.fixture
def token():
    return kadm.bootstrap.tokens.validate_token(EXAMPLE_TOKEN)


@pytest.fixture
def make_authority(certificate_authority):
    def factory(**kwargs):
        return FakeApprovalAuthority(certificate_authority, **kwargs)

    return factory


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_client(trust_anchor, token):
    def factory(authority, *, timeout_seconds=3600, clock=time.monotonic):
        return kadm.bootstrap.csr.BootstrapClient(
            cluster_name="kubernetes",
            server_url=SERVER_URL,
            trust_anchor=trust_anchor,
            token=token,
            node_name=NODE_NAME,
            approval_authority_factory=lambda configuration: authority,
            timeout_seconds=timeout_seconds,
            clock=clock,
        )

    return factory


@pytest.fixture
def cluster_configuration(tmp_path):
    return kadm.configuration.cluster_configuration_from_dict(
        {
            "configuration_directory": str(tmp_path / "etc"),
            "pki_directory": str(tmp_path / "etc" / "pki"),
            "node_name": NODE_NAME,
            "join_attempts": 3,
            "join_backoff_seconds": 0.5,
        }
    )


@pytest.fixture
def ca_certificate_file(tmp_path, trust_anchor):
    path = tmp_path / "ca.pem"
    path.write_bytes(trust_anchor)
    return path
