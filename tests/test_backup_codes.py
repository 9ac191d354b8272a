from sqlalchemy.orm import Session

from models import BackupCode
from utils.backup_codes import (
    consume_backup_code, count_remaining_backup_codes, hash_backup_code, issue_backup_codes,
    normalize_backup_code, retire_backup_codes
)


def test_normalize_backup_code():
    """Whitespace, dashes and case are ignored"""
    assert normalize_backup_code(" ab12-cd34 ") == "AB12CD34"
    assert normalize_backup_code("ab12 cd34") == "AB12CD34"


def test_hash_backup_code_is_deterministic():
    assert hash_backup_code("AB12CD34") == hash_backup_code("ab12-cd34")
    assert hash_backup_code("AB12CD34") != hash_backup_code("AB12CD35")


def test_issue_backup_codes_stores_only_digests(db, test_user):
    """Plaintext codes never reach the table"""
    codes = issue_backup_codes(db, test_user.id)
    db.commit()

    rows = db.query(BackupCode).filter(BackupCode.user_id == test_user.id).all()
    stored = {row.code_hash for row in rows}

    assert len(rows) == 8
    assert not stored.intersection(codes)
    assert stored == {hash_backup_code(code) for code in codes}


def test_issue_backup_codes_custom_count(db, test_user):
    codes = issue_backup_codes(db, test_user.id, count=3)
    db.commit()

    assert len(codes) == 3
    assert count_remaining_backup_codes(db, test_user.id) == 3


def test_issue_backup_codes_replaces_previous_batch(db, test_user):
    """A new batch retires every unused code of the old one"""
    old_codes = issue_backup_codes(db, test_user.id)
    db.commit()
    issue_backup_codes(db, test_user.id)
    db.commit()

    assert count_remaining_backup_codes(db, test_user.id) == 8
    assert consume_backup_code(db, test_user.id, old_codes[0]) is False


def test_consume_backup_code_single_use(db, test_user):
    """Each code can be redeemed once"""
    codes = issue_backup_codes(db, test_user.id)
    db.commit()

    assert consume_backup_code(db, test_user.id, codes[0]) is True
    assert consume_backup_code(db, test_user.id, codes[0]) is False
    assert count_remaining_backup_codes(db, test_user.id) == 7


def test_consume_backup_code_records_use_time(db, test_user):
    codes = issue_backup_codes(db, test_user.id)
    db.commit()

    consume_backup_code(db, test_user.id, codes[0])

    row = db.query(BackupCode).filter(BackupCode.code_hash == hash_backup_code(codes[0])).one()
    db.refresh(row)
    assert row.used is True
    assert row.used_at is not None


def test_consume_backup_code_wrong_user(db, test_user, other_user):
    codes = issue_backup_codes(db, test_user.id)
    db.commit()

    assert consume_backup_code(db, other_user.id, codes[0]) is False
    assert count_remaining_backup_codes(db, test_user.id) == 8


def test_retire_backup_codes(db, test_user):
    """Retired codes stay in the table but cannot be redeemed"""
    codes = issue_backup_codes(db, test_user.id)
    db.commit()

    assert retire_backup_codes(db, test_user.id) == 8
    db.commit()

    assert count_remaining_backup_codes(db, test_user.id) == 0
    assert db.query(BackupCode).filter(BackupCode.user_id == test_user.id).count() == 8
    assert consume_backup_code(db, test_user.id, codes[0]) is False


def test_consume_backup_code_from_two_sessions(db, test_user):
    """Two sessions racing on one code: only the first conditional update matches"""
    codes = issue_backup_codes(db, test_user.id)
    db.commit()

    first = Session(bind=db.get_bind())
    second = Session(bind=db.get_bind())
    try:
        results = [
            consume_backup_code(first, test_user.id, codes[0]),
            consume_backup_code(second, test_user.id, codes[0]),
        ]
    finally:
        first.close()
        second.close()

    assert results == [True, False]
    assert count_remaining_backup_codes(db, test_user.id) == 7
