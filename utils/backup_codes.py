import hashlib
import hmac
import secrets
from typing import List

import structlog
from sqlalchemy.orm import Session

from config import BACKUP_CODE_COUNT, SECRET_KEY
from models import BackupCode, utcnow

logger = structlog.get_logger(__name__)


def normalize_backup_code(code: str) -> str:
    return code.strip().replace("-", "").replace(" ", "").upper()


def hash_backup_code(code: str) -> str:
    """Keyed digest of a backup code; deterministic so it can be matched in SQL."""
    normalized = normalize_backup_code(code).encode("utf-8")
    return hmac.new(SECRET_KEY.encode("utf-8"), normalized, hashlib.sha256).hexdigest()


def generate_backup_code() -> str:
    return secrets.token_hex(4).upper()


def retire_backup_codes(db: Session, user_id: str) -> int:
    """Invalidate every unused code of the user without deleting the rows."""
    return db.query(BackupCode).filter(
        BackupCode.user_id == user_id,
        BackupCode.used == False
    ).update({BackupCode.used: True}, synchronize_session=False)


def issue_backup_codes(db: Session, user_id: str, count: int = BACKUP_CODE_COUNT) -> List[str]:
    """Replace the user's batch of backup codes and return the plaintext once.

    Only digests are written; the caller is responsible for committing.
    """
    retire_backup_codes(db, user_id)

    codes = set()
    while len(codes) < count:
        codes.add(generate_backup_code())

    plaintext = sorted(codes)
    for code in plaintext:
        db.add(BackupCode(user_id=user_id, code_hash=hash_backup_code(code), used=False))

    logger.info("backup_codes_issued", user_id=user_id, count=count)
    return plaintext


def consume_backup_code(db: Session, user_id: str, code: str) -> bool:
    """Redeem a backup code.

    The flip from unused to used is a single conditional UPDATE, so two racing
    requests with the same code see exactly one matched row between them.
    """
    code_hash = hash_backup_code(code)

    matched = db.query(BackupCode).filter(
        BackupCode.user_id == user_id,
        BackupCode.code_hash == code_hash,
        BackupCode.used == False
    ).update({BackupCode.used: True, BackupCode.used_at: utcnow()}, synchronize_session=False)
    db.commit()

    if matched:
        logger.info("backup_code_consumed", user_id=user_id)
    return bool(matched)


def count_remaining_backup_codes(db: Session, user_id: str) -> int:
    return db.query(BackupCode).filter(
        BackupCode.user_id == user_id,
        BackupCode.used == False
    ).count()
