#!/usr/bin/env python3
#
# Bootstrap tokens are short-lived shared secrets which authenticate a joining
# node's first request. The canonical form is "<id>.<secret>": a 6 character
# hex ID used as a non-secret lookup key, and a 16 character hex secret.

import binascii
import dataclasses
import kadm.errors
import secrets
import string

TOKEN_ID_LENGTH = 6
TOKEN_SECRET_BYTES = 8
SEPARATOR = "."


@dataclasses.dataclass(frozen=True)
class BootstrapToken:
    token_id: str
    secret: bytes

    @property
    def combined(self) -> str:
        return f"{self.token_id}{SEPARATOR}{self.secret.hex()}"

    @property
    def bearer_token(self) -> str:
        """
        The credential sent in the Authorization header. The API server looks
        bootstrap tokens up by ID, so the combined form is sent.
        """
        # https://kubernetes.io/docs/reference/access-authn-authz/bootstrap-tokens/
        return self.combined

    def __str__(self) -> str:
        return self.combined

    def __repr__(self) -> str:
        # Keep the secret out of logs and tracebacks
        return f"BootstrapToken(token_id={self.token_id!r}, secret=<redacted>)"


def generate_token() -> BootstrapToken:
    # secrets draws from the operating system's CSPRNG and holds no state of
    # its own, so concurrent callers cannot observe each other's output
    return BootstrapToken(
        token_id=secrets.token_hex(TOKEN_ID_LENGTH // 2),
        secret=secrets.token_bytes(TOKEN_SECRET_BYTES),
    )


def validate_token(raw: str) -> BootstrapToken:
    """
    Parse a token in canonical form. Hex digits are accepted in either case;
    nothing else is normalized, so surrounding whitespace is an error. Raises
    ConfigurationError describing the first problem found.
    """
    parts = raw.lower().split(SEPARATOR)
    if len(parts) != 2 or not all(parts):
        raise kadm.errors.ConfigurationError(
            "provided token is invalid - not in 2-part dot-separated format "
            "<6 character id>.<16 character secret>"
        )
    token_id, secret = parts

    if len(token_id) != TOKEN_ID_LENGTH:
        raise kadm.errors.ConfigurationError(
            "provided token is invalid - length of first part is incorrect "
            f"[{len(token_id)} (given) != {TOKEN_ID_LENGTH} (expected)]"
        )
    if not all(c in string.hexdigits for c in token_id):
        raise kadm.errors.ConfigurationError(
            "provided token is invalid - first part is not hexadecimal"
        )

    try:
        secret_bytes = binascii.unhexlify(secret)
    except (binascii.Error, ValueError) as e:
        raise kadm.errors.ConfigurationError(
            f"provided token is invalid - second part is not hexadecimal: {e}"
        ) from e
    if len(secret_bytes) != TOKEN_SECRET_BYTES:
        raise kadm.errors.ConfigurationError(
            "provided token is invalid - length of second part is incorrect "
            f"[{len(secret_bytes)} (given) != {TOKEN_SECRET_BYTES} (expected)]"
        )

    return BootstrapToken(token_id=token_id, secret=secret_bytes)
