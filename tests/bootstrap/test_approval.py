import base64
import json
import os

import pytest
import requests
import yarl

import kadm.bootstrap.approval
import kadm.errors
import kadm.kubernetes.kubeconfig

BASE_URL = "https://10.0.0.1:6443/apis/certificates.k8s.io/v1/certificatesigningrequests"

# ----------------- Fakes for requests -----------------


class FakeResponse:
    def __init__(self, status_code=200, body=None, lines=(), error=None):
        self.status_code = status_code
        self._body = body
        self._lines = list(lines)
        self._error = error
        self.text = json.dumps(body) if body is not None else ""
        self.closed = False

    def json(self):
        return self._body

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code} Error", response=self)

    def iter_lines(self):
        for line in self._lines:
            yield line
        if self._error is not None:
            raise self._error

    def close(self):
        self.closed = True


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []
        self.headers = {}
        self.verify = True
        self.closed = False

    def request(self, method, url, **kwargs):
        self.requests.append((method, url, kwargs))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def close(self):
        self.closed = True


def csr_object(name="csr-00001", request=b"REQUEST", conditions=(), certificate=None):
    status = {}
    if conditions:
        status["conditions"] = [dict(c) for c in conditions]
    if certificate is not None:
        status["certificate"] = base64.b64encode(certificate).decode()
    return {
        "apiVersion": "certificates.k8s.io/v1",
        "kind": "CertificateSigningRequest",
        "metadata": {"name": name},
        "spec": {"request": base64.b64encode(request).decode()},
        "status": status,
    }


def event_line(event_type, o):
    return json.dumps({"type": event_type, "object": o}).encode()


@pytest.fixture
def make_session(monkeypatch):
    def factory(*responses):
        session = FakeSession(responses)
        monkeypatch.setattr(requests, "Session", lambda: session)
        return session

    return factory


@pytest.fixture
def authority_for(trust_anchor):
    authorities = []

    def factory():
        authority = kadm.bootstrap.approval.KubernetesApprovalAuthority(
            server_url="https://10.0.0.1:6443",
            ca_certificate=trust_anchor,
            token="a1b2c3.0011223344556677",
        )
        authorities.append(authority)
        return authority

    yield factory
    for authority in authorities:
        authority.close()


class TestRecordFromObject:
    def test_full_record(self):
        record = kadm.bootstrap.approval.record_from_object(
            csr_object(
                conditions=[{"type": "Approved", "reason": "AutoApproved", "message": "ok"}],
                certificate=b"CERT",
            )
        )
        assert record.name == "csr-00001"
        assert record.request == b"REQUEST"
        assert record.conditions == (
            kadm.bootstrap.approval.SigningRequestCondition(
                type="Approved", reason="AutoApproved", message="ok"
            ),
        )
        assert record.certificate == b"CERT"

    def test_pending_record(self):
        o = csr_object()
        del o["status"]
        record = kadm.bootstrap.approval.record_from_object(o)
        assert record.conditions == ()
        assert record.certificate is None

    def test_malformed(self):
        with pytest.raises(kadm.errors.ProtocolError):
            kadm.bootstrap.approval.record_from_object({"metadata": {}})


class TestKubernetesApprovalAuthority:
    def test_session_trusts_only_cluster_ca(self, make_session, authority_for, trust_anchor):
        session = make_session()
        authority = authority_for()

        assert session.headers["Authorization"] == "Bearer a1b2c3.0011223344556677"
        with open(session.verify, "rb") as f:
            assert f.read() == trust_anchor

        authority.close()
        assert session.closed
        assert not os.path.exists(session.verify)

    def test_create(self, make_session, authority_for):
        session = make_session(FakeResponse(201, csr_object(request=b"PEM")))
        record = authority_for().create(request=b"PEM")

        method, url, kwargs = session.requests[0]
        assert method == "POST"
        assert url == BASE_URL
        body = kwargs["json"]
        assert body["metadata"] == {"generateName": "csr-"}
        assert base64.b64decode(body["spec"]["request"]) == b"PEM"
        assert body["spec"]["signerName"] == "kubernetes.io/kube-apiserver-client-kubelet"
        assert body["spec"]["usages"] == ["digital signature", "key encipherment", "client auth"]
        assert record.name == "csr-00001"

    def test_get(self, make_session, authority_for):
        session = make_session(FakeResponse(200, csr_object(certificate=b"CERT")))
        record = authority_for().get("csr-00001")

        assert session.requests[0][:2] == ("GET", f"{BASE_URL}/csr-00001")
        assert record.certificate == b"CERT"

    def test_watch(self, make_session, authority_for):
        response = FakeResponse(
            lines=[
                event_line("ADDED", csr_object()),
                b"",
                event_line(
                    "MODIFIED",
                    csr_object(conditions=[{"type": "Approved"}], certificate=b"CERT"),
                ),
            ]
        )
        session = make_session(response)
        watch = authority_for().watch("csr-00001", timeout_seconds=99.2)
        events = list(watch)
        watch.close()

        method, url, kwargs = session.requests[0]
        query = yarl.URL(url).query
        assert query["watch"] == "true"
        assert query["fieldSelector"] == "metadata.name=csr-00001"
        assert query["timeoutSeconds"] == "100"
        assert kwargs["stream"] is True

        assert [e.type for e in events] == [
            kadm.bootstrap.approval.WatchEventType.ADDED,
            kadm.bootstrap.approval.WatchEventType.MODIFIED,
        ]
        assert events[1].record.certificate == b"CERT"
        assert response.closed

    def test_watch_error_event(self, make_session, authority_for):
        make_session(
            FakeResponse(
                lines=[event_line("ERROR", {"kind": "Status", "message": "too old resource version"})]
            )
        )
        (event,) = list(authority_for().watch("csr-00001", timeout_seconds=10))
        assert event.type == kadm.bootstrap.approval.WatchEventType.ERROR
        assert event.record is None
        assert event.message == "too old resource version"

    def test_watch_stream_failure(self, make_session, authority_for):
        make_session(
            FakeResponse(
                lines=[event_line("ADDED", csr_object())],
                error=requests.exceptions.ChunkedEncodingError("connection broken"),
            )
        )
        watch = authority_for().watch("csr-00001", timeout_seconds=10)
        with pytest.raises(kadm.errors.WatchClosedError):
            list(watch)

    def test_watch_stream_failure_after_close(self, make_session, authority_for):
        make_session(
            FakeResponse(error=requests.exceptions.ChunkedEncodingError("closed"))
        )
        watch = authority_for().watch("csr-00001", timeout_seconds=10)
        watch.close()
        assert list(watch) == []

    def test_malformed_watch_event(self, make_session, authority_for):
        make_session(FakeResponse(lines=[b"not json"]))
        with pytest.raises(kadm.errors.ProtocolError):
            list(authority_for().watch("csr-00001", timeout_seconds=10))

    def test_delete(self, make_session, authority_for):
        session = make_session(FakeResponse(200, {}))
        authority_for().delete("csr-00001")
        assert session.requests[0][:2] == ("DELETE", f"{BASE_URL}/csr-00001")

    def test_delete_missing_record(self, make_session, authority_for):
        make_session(FakeResponse(404, {"kind": "Status"}))
        authority_for().delete("csr-00001")

    def test_delete_failure(self, make_session, authority_for):
        make_session(FakeResponse(500, {"kind": "Status"}))
        with pytest.raises(kadm.errors.ProtocolError):
            authority_for().delete("csr-00001")

    def test_unreachable_is_transient(self, make_session, authority_for):
        make_session(requests.exceptions.ConnectionError("connection refused"))
        with pytest.raises(kadm.errors.ApprovalConnectionError) as e:
            authority_for().get("csr-00001")
        assert isinstance(e.value, kadm.errors.TransientProtocolError)

    def test_forbidden_is_not_transient(self, make_session, authority_for):
        make_session(FakeResponse(403, {"kind": "Status", "reason": "Forbidden"}))
        with pytest.raises(kadm.errors.ProtocolError) as e:
            authority_for().create(request=b"PEM")
        assert not isinstance(e.value, kadm.errors.TransientProtocolError)


class TestFromClientConfiguration:
    def test_token_configuration(self, make_session, trust_anchor):
        session = make_session(FakeResponse(200, csr_object()))
        configuration = kadm.kubernetes.kubeconfig.make_client_configuration_with_token(
            kadm.kubernetes.kubeconfig.create_basic_client_configuration(
                "kubernetes", "https://10.0.0.2:6443", trust_anchor
            ),
            cluster_name="kubernetes",
            user_name="kubelet-node-1",
            token="a1b2c3.0011223344556677",
        )
        with kadm.bootstrap.approval.kubernetes_approval_authority(configuration) as authority:
            authority.get("csr-00001")

        assert session.headers["Authorization"] == "Bearer a1b2c3.0011223344556677"
        assert session.requests[0][1].startswith("https://10.0.0.2:6443/apis/")

    def test_incomplete_configuration(self, make_session, trust_anchor):
        make_session()
        configuration = kadm.kubernetes.kubeconfig.create_basic_client_configuration(
            "kubernetes", "https://10.0.0.2:6443", trust_anchor
        )
        with pytest.raises(kadm.errors.ConfigurationError):
            kadm.bootstrap.approval.kubernetes_approval_authority(configuration)
