#!/usr/bin/env python3
# filecrypt.py
#
# Password-based file encryptor/decryptor.
# Key: PBKDF2-HMAC-SHA512 over (password, random salt), stored hex-encoded in a separate key file.
# Artifact: base64(IV) || base64(AES-CBC ciphertext), PKCS7 padded, no separator.
#
# There is no authentication tag: a wrong key, a corrupted artifact and a tampered
# artifact are indistinguishable and only caught when padding or UTF-8 decoding fails.
#
# Dependencies: stdlib + cryptography

from __future__ import annotations

import argparse
import asyncio
import base64
import binascii
import logging
import os
import secrets
import sys
from dataclasses import dataclass, field
from getpass import getpass
from pathlib import Path
from typing import BinaryIO, Callable, Dict, Optional, Sequence, Tuple, Type, Union

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

__version__ = "1.0.0"

logger = logging.getLogger(__name__)


# =========================
# Constants
# =========================

DEFAULT_ITERATIONS = 500_000
DEFAULT_HASH = "sha512"
DEFAULT_SALT_LEN = 16

BLOCK_SIZE_BITS = 128
TEXT_ENCODING = "utf-8"
KEYFILE_SUFFIX = ".key"

_HASHES: Dict[str, Type[hashes.HashAlgorithm]] = {
    "sha256": hashes.SHA256,
    "sha384": hashes.SHA384,
    "sha512": hashes.SHA512,
}

Password = Union[str, bytes]
RandomSource = Callable[[int], bytes]


# =========================
# Errors
# =========================

class FileCryptError(Exception):
    pass


class DerivationError(FileCryptError):
    pass


class CipherInitError(FileCryptError):
    pass


class MalformedArtifactError(FileCryptError):
    pass


class DecryptionError(FileCryptError):
    """Padding, block length or text decoding failed after decryption.

    Raised for a wrong key as well as for corrupted or tampered data; without an
    authentication tag these cases cannot be told apart.
    """


class FileAccessError(FileCryptError):
    pass


class NotFoundError(FileAccessError):
    pass


# =========================
# Data
# =========================

@dataclass(frozen=True)
class CipherConfig:
    name: str
    iv_length: int
    key_length: int

    @property
    def encoded_iv_length(self) -> int:
        # base64 text length of an IV, padding included
        return 4 * ((self.iv_length + 2) // 3)

    @staticmethod
    def from_cli(name: str) -> "CipherConfig":
        try:
            return CIPHERS[name.lower()]
        except KeyError:
            raise ValueError(f"Unsupported cipher: {name}") from None


AES_256_CBC = CipherConfig(name="aes-256-cbc", iv_length=16, key_length=32)
AES_128_CBC = CipherConfig(name="aes-128-cbc", iv_length=16, key_length=16)

CIPHERS: Dict[str, CipherConfig] = {
    AES_256_CBC.name: AES_256_CBC,
    AES_128_CBC.name: AES_128_CBC,
}
DEFAULT_CIPHER = AES_256_CBC


@dataclass(frozen=True)
class DerivedKey:
    key: bytes = field(repr=False)

    def __len__(self) -> int:
        return len(self.key)

    def encode(self) -> str:
        return self.key.hex()

    @classmethod
    def decode(cls, text: str) -> "DerivedKey":
        text = text.strip()
        if text == "":
            raise MalformedArtifactError("Key file is empty.")
        try:
            return cls(bytes.fromhex(text))
        except ValueError as ex:
            raise MalformedArtifactError("Key file is not valid hex.") from ex


@dataclass(frozen=True)
class EncryptResult:
    key: DerivedKey
    artifact: str


# =========================
# Helpers
# =========================

def eprint(*args: object) -> None:
    print(*args, file=sys.stderr)


def _password_bytes(password: Password) -> bytes:
    if isinstance(password, str):
        return password.encode(TEXT_ENCODING)
    if isinstance(password, (bytes, bytearray)):
        return bytes(password)
    raise TypeError(f"password must be str or bytes, got {type(password).__name__}")


def generate_iv(length: int, random_bytes: RandomSource = os.urandom) -> bytes:
    """Random bytes for an IV or a salt. Each call yields an independent value."""
    if length <= 0:
        raise ValueError("IV length must be positive.")
    return random_bytes(length)


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64decode(text: str, what: str) -> bytes:
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as ex:
        raise MalformedArtifactError(f"Invalid base64 in {what}.") from ex


# =========================
# Key derivation
# =========================

class KeyDeriver:
    """Stretches a password into a symmetric key with PBKDF2-HMAC.

    ``derive`` is deterministic for a given salt. ``derive_key`` draws a fresh
    salt, which is not kept: the resulting key has to be persisted because it
    cannot be recomputed later.
    """

    def __init__(
        self,
        iterations: int = DEFAULT_ITERATIONS,
        hash_name: str = DEFAULT_HASH,
        random_bytes: RandomSource = os.urandom,
    ) -> None:
        self.iterations = iterations
        self.hash_name = hash_name
        self._random_bytes = random_bytes

    def _algorithm(self) -> hashes.HashAlgorithm:
        try:
            return _HASHES[self.hash_name.lower()]()
        except KeyError:
            raise DerivationError(f"Unsupported PBKDF2 hash: {self.hash_name}") from None

    def derive(self, password: Password, salt: bytes, key_length: int) -> DerivedKey:
        try:
            kdf = PBKDF2HMAC(
                algorithm=self._algorithm(),
                length=key_length,
                salt=salt,
                iterations=self.iterations,
            )
            return DerivedKey(kdf.derive(_password_bytes(password)))
        except (UnsupportedAlgorithm, ValueError) as ex:
            raise DerivationError(f"PBKDF2 derivation failed: {ex}") from ex

    def derive_key(
        self,
        password: Password,
        key_length: int,
        salt_length: int = DEFAULT_SALT_LEN,
    ) -> DerivedKey:
        salt = generate_iv(salt_length, self._random_bytes)
        logger.debug(
            "Deriving %d-byte key (%s, %d iterations)", key_length, self.hash_name, self.iterations
        )
        return self.derive(password, salt, key_length)


# =========================
# Cipher pipeline
# =========================

class CipherPipeline:
    def __init__(
        self,
        config: CipherConfig = DEFAULT_CIPHER,
        deriver: Optional[KeyDeriver] = None,
        random_bytes: RandomSource = os.urandom,
    ) -> None:
        self.config = config
        self.deriver = deriver if deriver is not None else KeyDeriver()
        self._random_bytes = random_bytes

    def _cipher(self, key: DerivedKey, iv: bytes) -> Cipher:
        try:
            return Cipher(algorithms.AES(key.key), modes.CBC(iv))
        except ValueError as ex:
            raise CipherInitError(f"{self.config.name} rejected key/IV: {ex}") from ex

    def split_artifact(self, artifact: str) -> Tuple[bytes, bytes]:
        cut = self.config.encoded_iv_length
        if len(artifact) < cut:
            raise MalformedArtifactError(
                f"Encrypted data too short: {len(artifact)} chars, IV alone needs {cut}."
            )
        iv = _b64decode(artifact[:cut], "IV")
        ciphertext = _b64decode(artifact[cut:], "ciphertext")
        if len(iv) != self.config.iv_length:
            raise MalformedArtifactError(
                f"Decoded IV is {len(iv)} bytes, expected {self.config.iv_length}."
            )
        return iv, ciphertext

    def encrypt(self, password: Password, plaintext: bytes) -> EncryptResult:
        key = self.deriver.derive_key(
            password, self.config.key_length, salt_length=self.config.iv_length
        )
        iv = generate_iv(self.config.iv_length, self._random_bytes)

        encryptor = self._cipher(key, iv).encryptor()
        padder = padding.PKCS7(BLOCK_SIZE_BITS).padder()
        padded = padder.update(plaintext) + padder.finalize()
        ciphertext = encryptor.update(padded) + encryptor.finalize()

        logger.debug(
            "Encrypted %d bytes into %d bytes with %s", len(plaintext), len(ciphertext), self.config.name
        )
        return EncryptResult(key=key, artifact=_b64encode(iv) + _b64encode(ciphertext))

    def encrypt_text(self, password: Password, text: str) -> EncryptResult:
        return self.encrypt(password, text.encode(TEXT_ENCODING))

    def decrypt(self, key: DerivedKey, artifact: str) -> bytes:
        iv, ciphertext = self.split_artifact(artifact)
        if len(key) != self.config.key_length:
            raise CipherInitError(
                f"{self.config.name} needs a {self.config.key_length}-byte key, got {len(key)} bytes."
            )

        decryptor = self._cipher(key, iv).decryptor()
        unpadder = padding.PKCS7(BLOCK_SIZE_BITS).unpadder()
        try:
            padded = decryptor.update(ciphertext) + decryptor.finalize()
            plaintext = unpadder.update(padded) + unpadder.finalize()
        except ValueError as ex:
            raise DecryptionError("Decryption failed: wrong key or corrupted data.") from ex

        logger.debug("Decrypted %d bytes with %s", len(plaintext), self.config.name)
        return plaintext

    def decrypt_text(self, key: DerivedKey, artifact: str) -> str:
        plaintext = self.decrypt(key, artifact)
        try:
            return plaintext.decode(TEXT_ENCODING)
        except UnicodeDecodeError as ex:
            raise DecryptionError("Decrypted data is not valid text: wrong key or corrupted data.") from ex


# =========================
# File I/O
# =========================

def _fsync_fileobj_best_effort(f: BinaryIO) -> None:
    try:
        f.flush()
        os.fsync(f.fileno())
    except OSError:
        pass


def _unlink_best_effort(p: Path) -> None:
    try:
        p.unlink()
    except OSError:
        pass


def _secure_open_exclusive(path: Path, *, mode: int) -> int:
    flags = os.O_WRONLY | os.O_CREAT | os.O_EXCL
    if os.name == "posix":
        flags |= getattr(os, "O_NOFOLLOW", 0)
    return os.open(str(path), flags, mode)


def _secure_create_tmp_file(parent_dir: Path, base_name: str, *, mode: int) -> Tuple[Path, BinaryIO]:
    for _ in range(128):
        tmp_path = parent_dir / f".{base_name}.{secrets.token_hex(8)}.tmp"
        try:
            fd = _secure_open_exclusive(tmp_path, mode=mode)
        except FileExistsError:
            continue
        return tmp_path, os.fdopen(fd, "wb", closefd=True)

    raise FileAccessError(f"Failed to create a unique temporary file in {parent_dir} (too many collisions).")


def _write_text_exclusive(path: Path, data: str, *, mode: int) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = _secure_open_exclusive(path, mode=mode)
    except FileExistsError as ex:
        raise FileCryptError(f"Refusing to overwrite existing file: {path}") from ex
    except OSError as ex:
        raise FileAccessError(f"Failed to create {path}: {ex}") from ex

    try:
        with os.fdopen(fd, "wb", closefd=True) as f:
            f.write(data.encode(TEXT_ENCODING))
            _fsync_fileobj_best_effort(f)
    except OSError as ex:
        _unlink_best_effort(path)
        raise FileAccessError(f"Failed to write {path}: {ex}") from ex

    logger.debug("Wrote %d chars to %s", len(data), path)


def write_text(path: Path, data: str, *, overwrite: bool = True, private: bool = False) -> None:
    """Write ``data`` as UTF-8, creating parent directories.

    With ``overwrite`` the content goes to a temporary sibling first and is moved
    into place with ``os.replace``, so ``path`` never holds a partial write.
    Without it, ``path`` is created exclusively (``O_EXCL``) and a file that
    already exists is never replaced. ``private`` makes the file readable by its
    owner only (POSIX).
    """
    path = Path(path)
    mode = 0o600 if private and os.name == "posix" else 0o666
    if not overwrite:
        _write_text_exclusive(path, data, mode=mode)
        return

    tmp_path: Optional[Path] = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path, tmp_f = _secure_create_tmp_file(path.parent, path.name, mode=mode)
        with tmp_f:
            tmp_f.write(data.encode(TEXT_ENCODING))
            _fsync_fileobj_best_effort(tmp_f)
        os.replace(tmp_path, path)
    except OSError as ex:
        if tmp_path is not None:
            _unlink_best_effort(tmp_path)
        raise FileAccessError(f"Failed to write {path}: {ex}") from ex

    logger.debug("Wrote %d chars to %s", len(data), path)


def read_text(path: Path) -> str:
    path = Path(path)
    try:
        return path.read_bytes().decode(TEXT_ENCODING)
    except FileNotFoundError as ex:
        raise NotFoundError(f"File not found: {path}") from ex
    except UnicodeDecodeError as ex:
        raise FileAccessError(f"File is not {TEXT_ENCODING} text: {path}") from ex
    except OSError as ex:
        raise FileAccessError(f"Failed to read {path}: {ex}") from ex


def default_key_path(in_path: Path) -> Path:
    in_path = Path(in_path)
    return in_path.with_name(in_path.name + KEYFILE_SUFFIX)


# =========================
# Encrypt / decrypt files
# =========================

def encrypt_file(
    password: Password,
    in_path: Path,
    out_path: Path,
    key_path: Optional[Path] = None,
    *,
    pipeline: Optional[CipherPipeline] = None,
    overwrite: bool = False,
    overwrite_keyfile: bool = False,
) -> EncryptResult:
    """Encrypt the text of ``in_path`` into ``out_path``.

    The key file (default ``<in_path>.key``) is written before the artifact; it is
    the only way back to the plaintext.
    """
    pipeline = pipeline if pipeline is not None else CipherPipeline()
    in_path = Path(in_path)
    out_path = Path(out_path)
    key_path = Path(key_path) if key_path is not None else default_key_path(in_path)

    if key_path.exists() and not overwrite_keyfile:
        raise FileCryptError(
            f"Keyfile already exists and overwriting is forbidden: {key_path}\n"
            f"Use a different --keyfile path (or --overwrite-keyfile if you really want to replace it)."
        )
    if out_path.exists() and not overwrite:
        raise FileCryptError(f"Output file already exists: {out_path} (use --overwrite to replace).")

    text = read_text(in_path)
    result = pipeline.encrypt_text(password, text)

    write_text(key_path, result.key.encode(), overwrite=overwrite_keyfile, private=True)
    write_text(out_path, result.artifact, overwrite=overwrite)
    logger.info("Encrypted %s -> %s (key: %s)", in_path, out_path, key_path)
    return result


def _decrypt_loaded(
    pipeline: CipherPipeline,
    key_text: str,
    artifact: str,
    out_path: Path,
    overwrite: bool,
) -> str:
    key = DerivedKey.decode(key_text)
    text = pipeline.decrypt_text(key, artifact)
    write_text(out_path, text, overwrite=overwrite)
    return text


def decrypt_file(
    key_path: Path,
    in_path: Path,
    out_path: Path,
    *,
    pipeline: Optional[CipherPipeline] = None,
    overwrite: bool = False,
) -> str:
    pipeline = pipeline if pipeline is not None else CipherPipeline()
    out_path = Path(out_path)
    if out_path.exists() and not overwrite:
        raise FileCryptError(f"Output file already exists: {out_path} (use --overwrite to replace).")

    key_text = read_text(key_path)
    artifact = read_text(in_path)
    text = _decrypt_loaded(pipeline, key_text, artifact, out_path, overwrite)
    logger.info("Decrypted %s -> %s", in_path, out_path)
    return text


async def encrypt_file_async(
    password: Password,
    in_path: Path,
    out_path: Path,
    key_path: Optional[Path] = None,
    *,
    pipeline: Optional[CipherPipeline] = None,
    overwrite: bool = False,
    overwrite_keyfile: bool = False,
) -> EncryptResult:
    return await asyncio.to_thread(
        encrypt_file,
        password,
        in_path,
        out_path,
        key_path,
        pipeline=pipeline,
        overwrite=overwrite,
        overwrite_keyfile=overwrite_keyfile,
    )


async def decrypt_file_async(
    key_path: Path,
    in_path: Path,
    out_path: Path,
    *,
    pipeline: Optional[CipherPipeline] = None,
    overwrite: bool = False,
) -> str:
    """Like ``decrypt_file``; the key file and the artifact are read concurrently."""
    pipeline = pipeline if pipeline is not None else CipherPipeline()
    out_path = Path(out_path)
    if out_path.exists() and not overwrite:
        raise FileCryptError(f"Output file already exists: {out_path} (use --overwrite to replace).")

    key_text, artifact = await asyncio.gather(
        asyncio.to_thread(read_text, key_path),
        asyncio.to_thread(read_text, in_path),
    )
    return await asyncio.to_thread(_decrypt_loaded, pipeline, key_text, artifact, out_path, overwrite)


# =========================
# CLI
# =========================

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="filecrypt",
        description=(
            "Encrypt/decrypt a text file with a password-derived AES-CBC key.\n"
            "Encrypt writes the key file and base64(IV)||base64(ciphertext); decrypt needs both."
        ),
        formatter_class=argparse.RawTextHelpFormatter,
    )

    g = p.add_mutually_exclusive_group()
    g.add_argument("--encrypt", action="store_true", help="Encrypt (default).")
    g.add_argument("--decrypt", action="store_true", help="Decrypt.")

    p.add_argument("--file", required=True, help="Encrypt: plaintext input. Decrypt: encrypted input.")
    p.add_argument("--out", required=True, help="Output file path.")
    p.add_argument(
        "--keyfile",
        default=None,
        help=(
            f"Encrypt: where to write the derived key (default <file>{KEYFILE_SUFFIX}).\n"
            "Decrypt: key file written during encryption (required)."
        ),
    )
    p.add_argument("--password", default=None, help="Encrypt-only: password (if omitted, will prompt).")
    p.add_argument(
        "--cipher",
        choices=sorted(CIPHERS),
        default=DEFAULT_CIPHER.name,
        help=f"Cipher configuration (default {DEFAULT_CIPHER.name}). Must match on decrypt.",
    )
    p.add_argument("--overwrite", action="store_true", help="Overwrite an existing output file.")
    p.add_argument(
        "--overwrite-keyfile",
        action="store_true",
        help="Encrypt-only: allow overwriting an existing keyfile (DANGEROUS; data encrypted with the old key is lost).",
    )
    p.add_argument("-v", "--verbose", action="store_true", help="Log progress to stderr.")
    return p


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")

    pipeline = CipherPipeline(config=CipherConfig.from_cli(args.cipher))
    in_path = Path(args.file)
    out_path = Path(args.out)
    keyfile_path = Path(args.keyfile) if args.keyfile is not None else None

    if args.decrypt:
        if args.password is not None:
            raise FileCryptError("--password is encrypt-only (decrypt uses the key file).")
        if args.overwrite_keyfile:
            raise FileCryptError("--overwrite-keyfile is encrypt-only.")
        if keyfile_path is None:
            raise FileCryptError("Decrypt requires --keyfile.")

        decrypt_file(keyfile_path, in_path, out_path, pipeline=pipeline, overwrite=bool(args.overwrite))
        return 0

    password = args.password
    if password is None:
        password = getpass("Password: ")
    if password == "":
        raise FileCryptError("Empty password is not allowed.")

    result = encrypt_file(
        password,
        in_path,
        out_path,
        keyfile_path,
        pipeline=pipeline,
        overwrite=bool(args.overwrite),
        overwrite_keyfile=bool(args.overwrite_keyfile),
    )
    written_to = keyfile_path if keyfile_path is not None else default_key_path(in_path)
    print(f"Key written to {written_to} ({len(result.key)}-byte {pipeline.config.name} key)")
    return 0


def run() -> None:
    try:
        raise SystemExit(main())
    except FileCryptError as ex:
        eprint(f"Error: {ex}")
        raise SystemExit(2)
    except KeyboardInterrupt:
        eprint("Interrupted.")
        raise SystemExit(130)


if __name__ == "__main__":
    run()
