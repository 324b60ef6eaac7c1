#!/usr/bin/env python3
#
# Provides functions for managing Public Key Infrastructure (PKI) within a
# Kubernetes cluster

import cryptography.exceptions
import cryptography.hazmat.primitives.asymmetric.ec as ellipic_curve
import cryptography.hazmat.primitives.hashes
import cryptography.hazmat.primitives.serialization as serialization
import cryptography.x509 as x509
import dataclasses
import datetime
import enum
import ipaddress
import kadm.errors
import secrets
import typing

PrivateKey = ellipic_curve.EllipticCurvePrivateKey
IPAddress = typing.Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


@dataclasses.dataclass(frozen=True)
class Keypair:
    private_key: PrivateKey
    certificate: x509.Certificate


@dataclasses.dataclass(frozen=True)
class SerializedKeypair:
    private_key: bytes
    certificate: bytes


class CertificateUsage(enum.Enum):
    "What a leaf certificate may be presented for"
    SERVER = enum.auto()
    CLIENT = enum.auto()


@dataclasses.dataclass(frozen=True)
class AlternativeNames:
    dns_names: typing.Tuple[str, ...] = ()
    ip_addresses: typing.Tuple[IPAddress, ...] = ()

    def deduplicated(self) -> "AlternativeNames":
        "Drop repeated names, keeping the first occurrence of each"
        return AlternativeNames(
            dns_names=tuple(dict.fromkeys(self.dns_names)),
            ip_addresses=tuple(dict.fromkeys(self.ip_addresses)),
        )

    def general_names(self) -> typing.List[x509.GeneralName]:
        names: typing.List[x509.GeneralName] = [
            x509.DNSName(name) for name in self.dns_names
        ]
        names.extend(x509.IPAddress(ip) for ip in self.ip_addresses)
        return names

    def __bool__(self) -> bool:
        return bool(self.dns_names or self.ip_addresses)


def standard_hash_algorithm() -> cryptography.hazmat.primitives.hashes.HashAlgorithm:
    return cryptography.hazmat.primitives.hashes.SHA256()


def _random_serial_number() -> int:
    # https://tools.ietf.org/html/rfc5280#section-4.1.2.2
    # At most 20 octets and positive, so the top bit must stay clear
    return secrets.randbits(20 * 8 - 1)


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def generate_private_key() -> PrivateKey:
    try:
        return ellipic_curve.generate_private_key(
            # The cryptography library only supports the NIST curves; there is
            # a general concern that the NSA may have influenced the selection
            # of weaker curves, so this is a candidate to revisit in the future.
            #
            # P-256 is significantly faster than P-384 and P-521 and offers
            # more security than RSA-2048.
            curve=ellipic_curve.SECP256R1(),
        )
    except (ValueError, cryptography.exceptions.InternalError) as e:
        raise kadm.errors.CryptoError(f"unable to generate private key: {e}") from e


def standard_key_usage() -> x509.KeyUsage:
    return x509.KeyUsage(
        content_commitment=False,
        crl_sign=False,
        data_encipherment=False,
        decipher_only=False,
        digital_signature=True,
        encipher_only=False,
        key_agreement=False,
        key_cert_sign=False,
        key_encipherment=True,
    )


def extended_key_usage(usage: CertificateUsage) -> x509.ExtendedKeyUsage:
    if usage == CertificateUsage.SERVER:
        return x509.ExtendedKeyUsage(usages=[x509.oid.ExtendedKeyUsageOID.SERVER_AUTH])
    return x509.ExtendedKeyUsage(usages=[x509.oid.ExtendedKeyUsageOID.CLIENT_AUTH])


def generate_subject_name(
    common_name: str, *, organization: typing.Optional[str] = None
) -> x509.Name:
    attributes = [x509.NameAttribute(x509.oid.NameOID.COMMON_NAME, common_name)]
    if organization:
        attributes.append(
            x509.NameAttribute(x509.oid.NameOID.ORGANIZATION_NAME, organization)
        )
    return x509.Name(attributes)


def generate_certificate_authority_certificate(
    name: x509.Name, *, signing_key: PrivateKey, validity: datetime.timedelta
) -> x509.Certificate:
    # https://cryptography.io/en/latest/x509/reference/#x-509-certificate-builder
    now = _now()
    return (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .add_extension(
            # https://tools.ietf.org/html/rfc5280#section-4.2.1.9
            x509.BasicConstraints(ca=True, path_length=None),
            critical=True,
        )
        .add_extension(
            x509.KeyUsage(
                content_commitment=False,
                crl_sign=True,
                data_encipherment=False,
                decipher_only=False,
                digital_signature=True,
                encipher_only=False,
                key_agreement=False,
                key_cert_sign=True,
                key_encipherment=False,
            ),
            critical=True,
        )
        .add_extension(
            # https://tools.ietf.org/html/rfc5280#section-4.2.1.2
            x509.SubjectKeyIdentifier.from_public_key(signing_key.public_key()),
            critical=False,
        )
        .serial_number(_random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + validity)
        .public_key(signing_key.public_key())
        .sign(private_key=signing_key, algorithm=standard_hash_algorithm())
    )


def generate_root_certificate_authority(
    common_name: str, *, validity: datetime.timedelta
) -> Keypair:
    "Generate a key and a self-signed CA certificate for it"
    signing_key = generate_private_key()
    return Keypair(
        private_key=signing_key,
        certificate=generate_certificate_authority_certificate(
            generate_subject_name(common_name),
            signing_key=signing_key,
            validity=validity,
        ),
    )


def generate_certificate_signing_request(
    private_key: PrivateKey,
    *,
    common_name: str,
    organization: typing.Optional[str] = None,
    alternative_names: typing.Optional[AlternativeNames] = None,
) -> x509.CertificateSigningRequest:
    csr_builder = x509.CertificateSigningRequestBuilder().subject_name(
        generate_subject_name(common_name, organization=organization)
    )
    if alternative_names:
        csr_builder = csr_builder.add_extension(
            x509.SubjectAlternativeName(alternative_names.general_names()),
            critical=False,
        )
    return csr_builder.sign(private_key=private_key, algorithm=standard_hash_algorithm())


def sign_certificate_signing_request(
    csr: x509.CertificateSigningRequest,
    *,
    usage: CertificateUsage,
    certificate_authority_keypair: Keypair,
    validity: datetime.timedelta,
) -> x509.Certificate:
    """
    Issue a leaf certificate for the subject and public key of the given
    request. A SubjectAlternativeName carried by the request is copied into
    the certificate. The request signature is checked first.
    """
    if not csr.is_signature_valid:
        raise kadm.errors.CryptoError("certificate signing request signature is invalid")

    now = _now()
    certificate_builder = (
        x509.CertificateBuilder()
        .subject_name(csr.subject)
        .public_key(csr.public_key())
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(standard_key_usage(), critical=True)
        .add_extension(
            x509.SubjectKeyIdentifier.from_public_key(csr.public_key()),
            critical=False,
        )
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(
                certificate_authority_keypair.private_key.public_key()
            ),
            critical=False,
        )
        .add_extension(extended_key_usage(usage), critical=False)
        .issuer_name(certificate_authority_keypair.certificate.subject)
        .serial_number(_random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + validity)
    )

    # Only names are taken from the request; constraints and usages are the
    # signer's decision
    for extension in csr.extensions:
        if isinstance(extension.value, x509.SubjectAlternativeName):
            certificate_builder = certificate_builder.add_extension(
                extension.value, critical=extension.critical
            )

    return certificate_builder.sign(
        private_key=certificate_authority_keypair.private_key,
        algorithm=standard_hash_algorithm(),
    )


def issue_certificate(
    common_name: str,
    *,
    organization: typing.Optional[str] = None,
    alternative_names: typing.Optional[AlternativeNames] = None,
    usage: CertificateUsage,
    certificate_authority_keypair: Keypair,
    validity: datetime.timedelta,
) -> Keypair:
    "Generate a leaf key and a certificate for it signed by the given CA"
    private_key = generate_private_key()
    csr = generate_certificate_signing_request(
        private_key,
        common_name=common_name,
        organization=organization,
        alternative_names=alternative_names.deduplicated() if alternative_names else None,
    )
    return Keypair(
        private_key=private_key,
        certificate=sign_certificate_signing_request(
            csr,
            usage=usage,
            certificate_authority_keypair=certificate_authority_keypair,
            validity=validity,
        ),
    )


def verify_certificate_chain(leaf: x509.Certificate, root: x509.Certificate) -> None:
    """
    Check that leaf was issued by root: the issuer name must match the root's
    subject and the signature must verify with the root's public key. Raises
    CryptoError otherwise.
    """
    if leaf.issuer != root.subject:
        raise kadm.errors.CryptoError(
            f"issuer {leaf.issuer.rfc4514_string()} does not match "
            f"{root.subject.rfc4514_string()}"
        )
    try:
        leaf.verify_directly_issued_by(root)
    except (ValueError, TypeError, cryptography.exceptions.InvalidSignature) as e:
        raise kadm.errors.CryptoError(f"certificate chain does not verify: {e}") from e


def serialize_private_key(private_key: PrivateKey) -> bytes:
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def serialize_public_key(private_key: PrivateKey) -> bytes:
    return private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def serialize_certificate(certificate: x509.Certificate) -> bytes:
    return certificate.public_bytes(serialization.Encoding.PEM)


def serialize_certificate_signing_request(csr: x509.CertificateSigningRequest) -> bytes:
    return csr.public_bytes(serialization.Encoding.PEM)


def serialize_keypair(keypair: Keypair) -> SerializedKeypair:
    return SerializedKeypair(
        private_key=serialize_private_key(keypair.private_key),
        certificate=serialize_certificate(keypair.certificate),
    )


def load_certificate(data: bytes) -> x509.Certificate:
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError as e:
        raise kadm.errors.CryptoError(f"unable to parse PEM certificate: {e}") from e


def load_certificate_signing_request(data: bytes) -> x509.CertificateSigningRequest:
    try:
        return x509.load_pem_x509_csr(data)
    except ValueError as e:
        raise kadm.errors.CryptoError(
            f"unable to parse certificate signing request: {e}"
        ) from e


def load_private_key(data: bytes) -> PrivateKey:
    try:
        private_key = serialization.load_pem_private_key(data, password=None)
    except (ValueError, TypeError) as e:
        raise kadm.errors.CryptoError(f"unable to parse PEM private key: {e}") from e
    if not isinstance(private_key, ellipic_curve.EllipticCurvePrivateKey):
        raise kadm.errors.CryptoError("private key is not an elliptic curve key")
    return private_key


def load_keypair(private_key: bytes, certificate: bytes) -> Keypair:
    return Keypair(
        private_key=load_private_key(private_key),
        certificate=load_certificate(certificate),
    )
