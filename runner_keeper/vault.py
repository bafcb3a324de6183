"""
Credential Vault Module

Stores GitHub tokens on local disk, masked with a password-derived keystream.

Layout of the vault directory (owner-only permissions):
    credentials.json    - one record per repository: salt + base64 ciphertext
    password.verifier   - Argon2id hash of the most recently used password
"""

import base64
import binascii
import json
import logging
import os
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from . import keystream
from .errors import AuthError, CorruptRecordError, NotFoundError


RECORDS_FILE = 'credentials.json'
VERIFIER_FILE = 'password.verifier'
VAULT_FORMAT_VERSION = 1

DIR_MODE = 0o700
FILE_MODE = 0o600

# Renames over the shared files must not interleave within the process.
_WRITE_LOCK = threading.RLock()


def atomic_write_text(path: Path, content: str, mode: int = FILE_MODE):
    """
    Replace a file's content atomically

    The content is written to a temporary file in the same directory, synced,
    and renamed over the target. A crash leaves either the old or new file.
    """
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix='.tmp')
    try:
        os.fchmod(fd, mode)
        with os.fdopen(fd, 'w', encoding='ascii') as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


class CredentialRecord:
    """An encrypted token for one repository"""

    def __init__(self, repository: str, ciphertext: str, salt: str, saved_at: str = ''):
        self.repository = repository
        self.ciphertext = ciphertext  # base64 of token XOR keystream
        self.salt = salt
        self.saved_at = saved_at

    def to_dict(self) -> Dict[str, str]:
        return {'ciphertext': self.ciphertext, 'salt': self.salt, 'saved_at': self.saved_at}

    @classmethod
    def from_dict(cls, repository: str, data) -> 'CredentialRecord':
        if not isinstance(data, dict):
            raise CorruptRecordError("record is not an object", subject=repository)
        ciphertext = data.get('ciphertext')
        salt = data.get('salt')
        if not isinstance(ciphertext, str) or not isinstance(salt, str) or not salt:
            raise CorruptRecordError("record is missing ciphertext or salt", subject=repository)
        return cls(repository, ciphertext, salt, data.get('saved_at', ''))

    def __repr__(self):
        # Never include the ciphertext
        return f"CredentialRecord({self.repository}, saved_at={self.saved_at})"


class PasswordVerifier:
    """One-way hash of the vault password, used to reject wrong passwords early"""

    def __init__(self, path: Path, hasher: Optional[PasswordHasher] = None):
        self.path = path
        self.hasher = hasher or PasswordHasher()

    def exists(self) -> bool:
        return self.path.exists()

    def write(self, password: str):
        atomic_write_text(self.path, self.hasher.hash(password) + '\n')

    def verify(self, password: str, subject: Optional[str] = None):
        """
        Check a password against the stored hash

        Raises:
            AuthError: On mismatch or when no verifier exists
            CorruptRecordError: If the verifier file is malformed
        """
        try:
            stored = self.path.read_text(encoding='ascii').strip()
        except FileNotFoundError:
            raise AuthError("no vault password has been set", subject=subject,
                            remediation="save a token first to choose a password")
        except (OSError, UnicodeDecodeError) as e:
            raise CorruptRecordError(f"cannot read password verifier: {e}", subject=subject)

        try:
            self.hasher.verify(stored, password)
        except VerifyMismatchError:
            raise AuthError("incorrect vault password", subject=subject)
        except InvalidHashError:
            raise CorruptRecordError("password verifier is malformed", subject=subject)
        except VerificationError as e:
            raise CorruptRecordError(f"password verification failed: {e}", subject=subject)

    def clear(self):
        self.path.unlink(missing_ok=True)


class CredentialStore:
    """Password-protected token storage keyed by repository"""

    def __init__(self, vault_dir: Path, logger: Optional[logging.Logger] = None,
                 hasher: Optional[PasswordHasher] = None):
        """
        Initialize the credential store

        Args:
            vault_dir: Directory holding the vault files
            logger: Logger instance
            hasher: Argon2 hasher override (tests use cheaper parameters)
        """
        self.vault_dir = Path(vault_dir).expanduser()
        self.logger = logger or logging.getLogger(__name__)
        self.records_path = self.vault_dir / RECORDS_FILE
        self.verifier = PasswordVerifier(self.vault_dir / VERIFIER_FILE, hasher)

    def _ensure_dir(self):
        self.vault_dir.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
        os.chmod(self.vault_dir, DIR_MODE)

    def _read_records(self) -> Dict[str, CredentialRecord]:
        try:
            raw = self.records_path.read_text(encoding='ascii')
        except FileNotFoundError:
            return {}
        except (OSError, UnicodeDecodeError) as e:
            raise CorruptRecordError(f"cannot read {self.records_path}: {e}")

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise CorruptRecordError(f"{self.records_path} is not valid JSON: {e}")
        if not isinstance(data, dict) or not isinstance(data.get('records'), dict):
            raise CorruptRecordError(f"{self.records_path} has an unexpected layout")
        if data.get('version') != VAULT_FORMAT_VERSION:
            raise CorruptRecordError(
                f"{self.records_path} has unsupported version {data.get('version')!r}")

        return {
            repository: CredentialRecord.from_dict(repository, entry)
            for repository, entry in data['records'].items()
        }

    def _write_records(self, records: Dict[str, CredentialRecord]):
        self._ensure_dir()
        document = {
            'version': VAULT_FORMAT_VERSION,
            'records': {repo: records[repo].to_dict() for repo in sorted(records)},
        }
        atomic_write_text(self.records_path, json.dumps(document, indent=2) + '\n')

    def save(self, repository: str, token: str, password: str):
        """
        Encrypt and store a token for a repository

        Overwrites any existing record for the repository and makes the given
        password the vault's current password.

        Args:
            repository: Repository in owner/repo form
            token: GitHub token to store
            password: Password used to mask the token
        """
        if not token:
            raise ValueError("token must not be empty")
        if not password:
            raise ValueError("password must not be empty")

        salt = keystream.new_salt()
        payload = token.encode('utf-8')
        masked = keystream.encode(payload, keystream.derive_keystream(password, salt, len(payload)))
        record = CredentialRecord(
            repository,
            base64.b64encode(masked).decode('ascii'),
            salt,
            datetime.now(timezone.utc).isoformat(timespec='seconds'),
        )

        with _WRITE_LOCK:
            records = self._read_records()
            replacing = repository in records
            records[repository] = record
            self._write_records(records)
            self.verifier.write(password)

        action = "Replaced" if replacing else "Saved"
        self.logger.info(f"{action} token for {repository}")

    def load(self, repository: str, password: str) -> str:
        """
        Decrypt and return the token stored for a repository

        Raises:
            NotFoundError: No record for the repository
            AuthError: Wrong password
            CorruptRecordError: Vault files unreadable or malformed
        """
        records = self._read_records()
        record = records.get(repository)
        if record is None:
            raise NotFoundError("no saved token", subject=repository,
                                remediation="save a token for this repository first")

        self.verifier.verify(password, subject=repository)

        try:
            masked = base64.b64decode(record.ciphertext.encode('ascii'), validate=True)
        except (binascii.Error, UnicodeEncodeError):
            raise CorruptRecordError("ciphertext is not valid base64", subject=repository)

        payload = keystream.decode(masked, keystream.derive_keystream(password, record.salt, len(masked)))
        token = self._plausible_token(payload)
        if token is None:
            # Verifier matched but the record was masked under another password
            raise AuthError("password does not decrypt this token", subject=repository,
                            remediation="enter the password used when this token was saved, "
                                        "or clear and save the token again")
        return token

    @staticmethod
    def _plausible_token(payload: bytes) -> Optional[str]:
        if not payload:
            return None
        try:
            text = payload.decode('ascii')
        except UnicodeDecodeError:
            return None
        if not text.isprintable() or any(c.isspace() for c in text):
            return None
        return text

    def list(self, password: str) -> List[str]:
        """Return the repositories with saved tokens, after verifying the password"""
        records = self._read_records()
        if not records and not self.verifier.exists():
            return []
        self.verifier.verify(password)
        return sorted(records)

    def repositories(self) -> List[str]:
        """Repository keys without password verification (not confidential)"""
        return sorted(self._read_records())

    def clear_one(self, repository: str) -> bool:
        """
        Delete the record for one repository

        Returns:
            True if a record was deleted, False if none existed
        """
        with _WRITE_LOCK:
            try:
                records = self._read_records()
            except CorruptRecordError:
                self.logger.warning(f"Vault is corrupt; cannot clear {repository} alone, use clear-all")
                raise
            if repository not in records:
                return False
            del records[repository]
            self._write_records(records)
        self.logger.info(f"Cleared token for {repository}")
        return True

    def clear_all(self):
        """Delete all records and the password verifier"""
        with _WRITE_LOCK:
            self.records_path.unlink(missing_ok=True)
            self.verifier.clear()
        self.logger.info("Cleared all saved tokens")
