"""
Passphrase handling and OpenSSL-compatible streaming encryption

Archives use the ``openssl enc`` container: ``Salted__`` + 8 byte salt +
AES-256-CBC ciphertext with PKCS#7 padding. They can be opened without this
tool:

    openssl enc -d -aes256 -pbkdf2 -pass file:<pass_file> -in vm.tgz.enc | tar xz

(drop ``-pbkdf2`` for archives written with ``key_derivation = "evp"``).
"""
import hashlib
import io
import os
import stat
from pathlib import Path
from typing import BinaryIO, Tuple

from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .exceptions import PipelineError, PreconditionError

MAGIC = b"Salted__"
SALT_SIZE = 8
KEY_SIZE = 32
IV_SIZE = 16
PBKDF2_ITERATIONS = 10000  # openssl enc -pbkdf2 default
CHUNK_SIZE = 1024 * 1024


def check_secret_file(path: Path) -> None:
    """The passphrase file must exist and be readable by its owner only"""
    path = Path(path)
    if not path.is_file():
        raise PreconditionError(f"{path} is missing", {"pass_file": str(path)})
    mode = stat.S_IMODE(path.stat().st_mode)
    if mode & 0o077:
        raise PreconditionError(
            f"Passfile has unsafe permissions ({mode:o}); expected owner-only access such as 600",
            {"pass_file": str(path), "mode": f"{mode:o}"},
        )


def read_passphrase(path: Path) -> bytes:
    """First line of the passphrase file, as ``openssl -pass file:`` reads it"""
    check_secret_file(path)
    with open(path, 'rb') as f:
        passphrase = f.readline().rstrip(b"\r\n")
    if not passphrase:
        raise PreconditionError(f"{path} holds an empty passphrase", {"pass_file": str(path)})
    return passphrase


def derive_key_iv(passphrase: bytes, salt: bytes, key_derivation: str = "pbkdf2") -> Tuple[bytes, bytes]:
    """Key and IV exactly as ``openssl enc -aes256 [-pbkdf2]`` derives them"""
    if key_derivation == "pbkdf2":
        kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=KEY_SIZE + IV_SIZE,
                         salt=salt, iterations=PBKDF2_ITERATIONS)
        material = kdf.derive(passphrase)
    elif key_derivation == "evp":
        # EVP_BytesToKey, one iteration, SHA-256 (openssl >= 1.1 default digest)
        material = b""
        block = b""
        while len(material) < KEY_SIZE + IV_SIZE:
            block = hashlib.sha256(block + passphrase + salt).digest()
            material += block
    else:
        raise ValueError(f"Unknown key derivation '{key_derivation}'")
    return material[:KEY_SIZE], material[KEY_SIZE:KEY_SIZE + IV_SIZE]


class EncryptingWriter(io.RawIOBase):
    """Write-only stream that encrypts everything written into ``fileobj``.

    Closing the writer emits the final padded block; it does not close
    ``fileobj``.
    """

    def __init__(self, fileobj: BinaryIO, passphrase: bytes, key_derivation: str = "pbkdf2"):
        super().__init__()
        self._fileobj = fileobj
        salt = os.urandom(SALT_SIZE)
        key, iv = derive_key_iv(passphrase, salt, key_derivation)
        self._encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
        self._padder = padding.PKCS7(algorithms.AES.block_size).padder()
        self._fileobj.write(MAGIC + salt)

    def writable(self) -> bool:
        return True

    def write(self, data) -> int:
        if self.closed:
            raise ValueError("write to closed EncryptingWriter")
        data = bytes(data)
        encrypted = self._encryptor.update(self._padder.update(data))
        if encrypted:
            self._fileobj.write(encrypted)
        return len(data)

    def abort(self) -> None:
        """Close without writing the final block (the output is being discarded)"""
        super().close()

    def close(self) -> None:
        if not self.closed:
            tail = self._encryptor.update(self._padder.finalize()) + self._encryptor.finalize()
            self._fileobj.write(tail)
        super().close()


def decrypt_stream(source: BinaryIO, target: BinaryIO, passphrase: bytes,
                   key_derivation: str = "pbkdf2") -> None:
    """Decrypt an ``openssl enc`` stream from ``source`` into ``target``"""
    header = source.read(len(MAGIC) + SALT_SIZE)
    if not header.startswith(MAGIC) or len(header) != len(MAGIC) + SALT_SIZE:
        raise PipelineError("Not an openssl salted archive")
    key, iv = derive_key_iv(passphrase, header[len(MAGIC):], key_derivation)
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()

    for chunk in iter(lambda: source.read(CHUNK_SIZE), b""):
        target.write(unpadder.update(decryptor.update(chunk)))
    try:
        target.write(unpadder.update(decryptor.finalize()) + unpadder.finalize())
    except ValueError as e:
        raise PipelineError("Wrong passphrase or corrupt archive") from e
