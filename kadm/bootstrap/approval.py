#!/usr/bin/env python3
#
# This module contains the interface to the approval authority, the external
# service which stores signing requests and records administrator or policy
# decisions on them, and a client for the Kubernetes certificates API.

import abc
import base64
import binascii
import dataclasses
import enum
import json
import kadm.configuration.project
import kadm.errors
import kadm.kubernetes.kubeconfig
import kadm.logging
import math
import os
import requests
import tempfile
import threading
import typing
import yarl

logger = kadm.logging.get_logger(__name__)

APPROVED = "Approved"
DENIED = "Denied"


@dataclasses.dataclass(frozen=True)
class SigningRequestCondition:
    type: str
    reason: str = ""
    message: str = ""


@dataclasses.dataclass(frozen=True)
class SigningRequestRecord:
    name: str
    # PEM encoded PKCS#10 request
    request: bytes
    conditions: typing.Tuple[SigningRequestCondition, ...] = ()
    # PEM encoded certificate, set by the signer once approved
    certificate: typing.Optional[bytes] = None


class WatchEventType(enum.Enum):
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    ERROR = "ERROR"


@dataclasses.dataclass(frozen=True)
class WatchEvent:
    type: WatchEventType
    record: typing.Optional[SigningRequestRecord] = None
    message: str = ""


class SigningRequestWatch(abc.ABC):
    """
    A live subscription to changes of one signing request. Iteration blocks
    until the next event and stops when the subscription ends. close() may be
    called from another thread to end a blocked iteration.
    """

    @abc.abstractmethod
    def __iter__(self) -> typing.Iterator[WatchEvent]:
        pass

    @abc.abstractmethod
    def close(self) -> None:
        pass

    def __enter__(self) -> "SigningRequestWatch":
        return self

    def __exit__(self, *args) -> None:
        self.close()


class ApprovalAuthority(abc.ABC):
    """
    Abstract class which must be implemented by a signing request store.
    """

    @abc.abstractmethod
    def create(self, *, request: bytes) -> SigningRequestRecord:
        """
        Store a new signing request for the given PEM encoded PKCS#10 request.
        The authority chooses the record's name.
        """
        pass

    @abc.abstractmethod
    def get(self, name: str) -> SigningRequestRecord:
        """
        Return the current state of the named record.
        """
        pass

    @abc.abstractmethod
    def watch(self, name: str, *, timeout_seconds: float) -> SigningRequestWatch:
        """
        Subscribe to changes of the named record. The subscription must end
        no later than timeout_seconds from now.
        """
        pass

    @abc.abstractmethod
    def delete(self, name: str) -> None:
        """
        Delete the named record. Deleting a record which no longer exists is
        not an error.
        """
        pass

    def close(self) -> None:
        "Release connections held by the client"
        pass


def record_from_object(o: dict) -> SigningRequestRecord:
    "Convert a certificates.k8s.io CertificateSigningRequest object"
    try:
        status = o.get("status") or {}
        certificate = status.get("certificate")
        return SigningRequestRecord(
            name=o["metadata"]["name"],
            request=base64.b64decode(o["spec"]["request"]),
            conditions=tuple(
                SigningRequestCondition(
                    type=c["type"],
                    reason=c.get("reason", ""),
                    message=c.get("message", ""),
                )
                for c in status.get("conditions") or []
            ),
            certificate=base64.b64decode(certificate) if certificate else None,
        )
    except (KeyError, TypeError, AttributeError, binascii.Error) as e:
        raise kadm.errors.ProtocolError(
            f"malformed certificate signing request object: {e!r}"
        ) from e


class _KubernetesWatch(SigningRequestWatch):
    def __init__(self, response: requests.Response):
        self.__response = response
        self.__closed = threading.Event()

    def __iter__(self) -> typing.Iterator[WatchEvent]:
        try:
            for line in self.__response.iter_lines():
                if not line:
                    continue
                yield self.__event_from_line(line)
        except (requests.exceptions.RequestException, AttributeError, ValueError) as e:
            # Closing the response from another thread surfaces here
            if self.__closed.is_set():
                return
            raise kadm.errors.WatchClosedError(f"watch stream failed: {e}") from e

    @staticmethod
    def __event_from_line(line: bytes) -> WatchEvent:
        try:
            data = json.loads(line)
            event_type = WatchEventType(data["type"])
        except (ValueError, KeyError, TypeError) as e:
            raise kadm.errors.ProtocolError(f"malformed watch event: {line!r}") from e
        if event_type == WatchEventType.ERROR:
            # The object of an ERROR event is a Status, not a signing request
            return WatchEvent(
                type=event_type, message=str(data.get("object", {}).get("message", ""))
            )
        return WatchEvent(type=event_type, record=record_from_object(data["object"]))

    def close(self) -> None:
        self.__closed.set()
        self.__response.close()


class KubernetesApprovalAuthority(ApprovalAuthority):
    """
    Client for the certificates.k8s.io signing request API of one API server.
    Requests authenticate with a bearer token and verify the server against
    the cluster CA only.
    """

    def __init__(
        self,
        *,
        server_url: str,
        ca_certificate: bytes,
        token: str,
        request_timeout_seconds: float = 30,
    ):
        project = kadm.configuration.project.ProjectConfiguration
        self.__base_url = yarl.URL(server_url).with_path(project.certificates_api_path)
        self.__request_timeout_seconds = request_timeout_seconds

        # requests only accepts CA bundles from the filesystem
        descriptor, self.__ca_path = tempfile.mkstemp(prefix="kadm-ca-", suffix=".pem")
        with os.fdopen(descriptor, "wb") as f:
            f.write(ca_certificate)

        self.__session = requests.Session()
        self.__session.verify = self.__ca_path
        self.__session.headers["Authorization"] = f"Bearer {token}"
        self.__session.headers["Accept"] = "application/json"

    @classmethod
    def from_client_configuration(cls, configuration: dict) -> "KubernetesApprovalAuthority":
        "Build a client from a token-bearing client configuration document"
        try:
            _, _, cluster, user = kadm.kubernetes.kubeconfig.current_entries(
                configuration
            )
            return cls(
                server_url=cluster["server"],
                ca_certificate=base64.b64decode(cluster["certificate-authority-data"]),
                token=user["token"],
            )
        except (KeyError, StopIteration, binascii.Error) as e:
            raise kadm.errors.ConfigurationError(
                f"bootstrap client configuration is incomplete: {e!r}"
            ) from e

    def close(self) -> None:
        self.__session.close()
        if os.path.exists(self.__ca_path):
            os.unlink(self.__ca_path)

    def __enter__(self) -> "KubernetesApprovalAuthority":
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def __request(self, method: str, url: yarl.URL, **kwargs) -> requests.Response:
        kwargs.setdefault("timeout", self.__request_timeout_seconds)
        try:
            response = self.__session.request(method, str(url), **kwargs)
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            raise kadm.errors.ApprovalConnectionError(
                f"unable to reach {url.origin()}: {e}"
            ) from e
        except requests.exceptions.RequestException as e:
            raise kadm.errors.ProtocolError(f"{method} {url} failed: {e}") from e
        return response

    @staticmethod
    def __raise_for_status(response: requests.Response, action: str) -> None:
        try:
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            logger.error(f"Unable to {action}: {response.status_code} {response.text}")
            raise kadm.errors.ProtocolError(
                f"unable to {action}: HTTP {response.status_code}"
            ) from e

    def create(self, *, request: bytes) -> SigningRequestRecord:
        project = kadm.configuration.project.ProjectConfiguration
        body = {
            "apiVersion": "certificates.k8s.io/v1",
            "kind": "CertificateSigningRequest",
            "metadata": {"generateName": project.signing_request_name_prefix},
            "spec": {
                "request": base64.b64encode(request).decode(),
                "signerName": project.signer_name,
                "usages": list(project.client_usages),
            },
        }
        response = self.__request("POST", self.__base_url, json=body)
        self.__raise_for_status(response, "create certificate signing request")
        return record_from_object(response.json())

    def get(self, name: str) -> SigningRequestRecord:
        response = self.__request("GET", self.__base_url / name)
        self.__raise_for_status(response, f"get certificate signing request {name}")
        return record_from_object(response.json())

    def watch(self, name: str, *, timeout_seconds: float) -> SigningRequestWatch:
        server_timeout = max(1, math.ceil(timeout_seconds))
        url = self.__base_url.with_query(
            {
                "watch": "true",
                "fieldSelector": f"metadata.name={name}",
                "timeoutSeconds": str(server_timeout),
            }
        )
        # The read timeout only guards against a server which ignores
        # timeoutSeconds
        response = self.__request(
            "GET",
            url,
            stream=True,
            timeout=(
                self.__request_timeout_seconds,
                server_timeout + self.__request_timeout_seconds,
            ),
        )
        self.__raise_for_status(response, f"watch certificate signing request {name}")
        return _KubernetesWatch(response)

    def delete(self, name: str) -> None:
        response = self.__request("DELETE", self.__base_url / name)
        if response.status_code == 404:
            return
        self.__raise_for_status(response, f"delete certificate signing request {name}")


def kubernetes_approval_authority(configuration: dict) -> ApprovalAuthority:
    return KubernetesApprovalAuthority.from_client_configuration(configuration)
