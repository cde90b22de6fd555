"""RSA signature checks of bootstrap files."""

from __future__ import annotations

import base64
import binascii
import os
import re
import textwrap
from typing import BinaryIO, Optional

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.asymmetric import utils as asym_utils

_PEM_BLOCK_RE = re.compile(rb"-----BEGIN ([^-\r\n]+)-----\s*(.*?)-----END \1-----", re.S)
_CHUNK_SIZE = 64 * 1024


def _load_pkcs1_public_key(data: bytes) -> rsa.RSAPublicKey:
    match = _PEM_BLOCK_RE.search(data)
    if match is None:
        raise ValueError("no PEM block found in public key")
    body = b"".join(line for line in match.group(2).split() if b":" not in line)
    try:
        der = base64.b64decode(body, validate=True)
    except binascii.Error as err:
        raise ValueError(f"malformed PEM body: {err}") from err
    encoded = "\n".join(textwrap.wrap(base64.b64encode(der).decode("ascii"), 64))
    pem = f"-----BEGIN RSA PUBLIC KEY-----\n{encoded}\n-----END RSA PUBLIC KEY-----\n"
    key = serialization.load_pem_public_key(pem.encode("ascii"))
    if not isinstance(key, rsa.RSAPublicKey):
        raise ValueError("public key is not an RSA key")
    return key


class Signer:
    """Checks RSA PKCS#1 v1.5 SHA-256 signatures with a PKCS#1 public key."""

    def __init__(self, public_key: bytes):
        self._public_key = _load_pkcs1_public_key(public_key)

    def verify(self, stream: BinaryIO, signature: bytes) -> None:
        """Verify the signature of the stream's content.

        Raises cryptography.exceptions.InvalidSignature on mismatch.
        """
        digest = hashes.Hash(hashes.SHA256())
        for chunk in iter(lambda: stream.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
        self._public_key.verify(
            signature,
            digest.finalize(),
            padding.PKCS1v15(),
            asym_utils.Prehashed(hashes.SHA256()),
        )


class Verifier:
    """Verifies bootstrap files against base64 signatures when configured."""

    def __init__(self, public_key_file: str, validate_signature: bool):
        self.force = validate_signature
        self.signer: Optional[Signer] = None
        if not validate_signature:
            return
        if not public_key_file:
            raise ValueError("publicKeyFile is required")
        if not os.path.exists(public_key_file):
            raise FileNotFoundError(f"failed to find publicKeyFile {public_key_file!r}")
        with open(public_key_file, "rb") as handle:
            key_bytes = handle.read()
        try:
            self.signer = Signer(key_bytes)
        except ValueError as err:
            raise ValueError(f"failed to initialize signer: {err}") from err

    def verify(self, encoded_signature: Optional[str], bootstrap_file: str) -> bool:
        """Check the bootstrap file; return True if a signature was checked.

        Raises ValueError when a signature is required but missing or is not
        valid base64, and InvalidSignature when it does not match.
        """
        if encoded_signature is None:
            if self.force:
                raise ValueError("bootstrap signature is required when force validation")
            return False
        try:
            signature = base64.b64decode(encoded_signature, validate=True)
        except binascii.Error as err:
            raise ValueError(f"invalid signature encoding: {err}") from err
        if self.signer is None:
            return False
        with open(bootstrap_file, "rb") as handle:
            self.signer.verify(handle, signature)
        return True