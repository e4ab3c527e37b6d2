"""
데이터베이스 백업/복원
전체 데이터 테이블을 하나의 스냅샷으로 저장하고, 청크 단위로 복원합니다.
"""
import logging
from datetime import date, datetime

from sqlalchemy import Date, DateTime, func, select
from sqlalchemy.exc import SQLAlchemyError

from models import BACKUP_TABLES, Backup, BackupLog, db

logger = logging.getLogger(__name__)

BACKUP_VERSION = '1.0'


class BackupNotFound(Exception):
    """요청한 이름의 백업이 없음"""


def data_tables():
    """백업 대상 테이블 (외래 키 의존 순서)"""
    return [table for table in db.metadata.sorted_tables if table.name not in BACKUP_TABLES]


def list_data_tables():
    """백업 대상 테이블과 행 수"""
    stats = []
    for table in data_tables():
        count = db.session.execute(select(func.count()).select_from(table)).scalar()
        stats.append({'name': table.name, 'count': count, 'type': 'table'})
    return stats


def _serialize_value(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def _deserialize_row(table, row):
    restored = {}
    for column in table.columns:
        if column.name not in row:
            continue
        value = row[column.name]
        if value is not None and isinstance(column.type, DateTime):
            value = datetime.fromisoformat(value)
        elif value is not None and isinstance(column.type, Date):
            value = date.fromisoformat(value)
        restored[column.name] = value
    return restored


def snapshot_table(table):
    rows = db.session.execute(select(table)).mappings().all()
    return [{key: _serialize_value(value) for key, value in row.items()} for row in rows]


def default_backup_name(timestamp):
    return f"backup_{timestamp.strftime('%Y-%m-%dT%H-%M-%S')}"


def _log(action, backup_name=None, **details):
    db.session.add(BackupLog(action=action, backup_name=backup_name, details=details))


def create_backup(name=None):
    """전체 데이터 테이블 스냅샷 생성"""
    timestamp = datetime.utcnow()
    name = name or default_backup_name(timestamp)
    if Backup.query.filter_by(name=name).first():
        raise ValueError(f"Backup '{name}' already exists")

    collections = {}
    total_documents = 0
    for table in data_tables():
        rows = snapshot_table(table)
        collections[table.name] = rows
        total_documents += len(rows)

    stats = {
        'total_documents': total_documents,
        'total_collections': len(collections),
        'version': BACKUP_VERSION,
    }
    backup = Backup(name=name, timestamp=timestamp, collections=collections, stats=stats)
    db.session.add(backup)
    _log('backup_created', name, metadata=stats)
    db.session.commit()

    logger.info(f"Backup created: {name} ({total_documents} rows, {len(collections)} tables)")
    return backup


def _insert_chunks(table, rows, chunk_size):
    for start in range(0, len(rows), chunk_size):
        chunk = [_deserialize_row(table, row) for row in rows[start:start + chunk_size]]
        db.session.execute(table.insert(), chunk)
        logger.debug(f"Restored {table.name}: {start + len(chunk)}/{len(rows)}")


def restore_backup(name, chunk_size=500):
    """
    백업 복원

    스냅샷에 있는 테이블을 자식 테이블부터 비운 뒤, 부모 테이블부터 chunk_size 단위로 다시 채웁니다.
    테이블 단위로 커밋하므로 한 테이블이 실패해도 나머지 테이블 복원은 계속됩니다.
    실패한 테이블은 복원 전에 있던 행으로 되돌립니다.

    Returns:
        (백업 정보 딕셔너리, 테이블별 결과 목록)
    """
    backup = Backup.query.filter_by(name=name).first()
    if not backup:
        raise BackupNotFound(name)

    info = backup.to_dict()
    snapshot = backup.collections or {}
    known = {table.name for table in data_tables()}
    ordered = [table for table in data_tables() if table.name in snapshot]
    chunk_size = max(1, int(chunk_size))

    errors = {}
    for table_name in snapshot:
        if table_name not in known:
            errors[table_name] = 'Unknown table'

    current = {table.name: snapshot_table(table) for table in ordered}
    cleared = set()

    for table in reversed(ordered):
        try:
            db.session.execute(table.delete())
            db.session.commit()
            cleared.add(table.name)
        except (SQLAlchemyError, ValueError, TypeError) as e:
            db.session.rollback()
            logger.error(f"Failed to clear table {table.name}: {e}", exc_info=True)
            errors[table.name] = str(e)

    for table in ordered:
        if table.name not in cleared:
            continue
        try:
            _insert_chunks(table, snapshot[table.name], chunk_size)
            db.session.commit()
        except (SQLAlchemyError, ValueError, TypeError) as e:
            db.session.rollback()
            logger.error(f"Failed to restore table {table.name}: {e}", exc_info=True)
            errors[table.name] = str(e)
            try:
                _insert_chunks(table, current[table.name], chunk_size)
                db.session.commit()
            except (SQLAlchemyError, ValueError, TypeError) as put_back_error:
                db.session.rollback()
                logger.error(f"Failed to put back original rows of {table.name}: {put_back_error}", exc_info=True)
                errors[table.name] = f"{e} (original rows lost: {put_back_error})"

    results = []
    for table_name, rows in snapshot.items():
        if table_name in errors:
            results.append({'collection': table_name, 'success': False, 'error': errors[table_name]})
        else:
            results.append({'collection': table_name, 'success': True, 'restored_count': len(rows)})

    _log('backup_restored', name, results=results)
    db.session.commit()

    success_count = len([r for r in results if r['success']])
    logger.info(f"Backup restored: {name} ({success_count}/{len(results)} tables)")
    return info, results


def list_backups(limit=20):
    return Backup.query.order_by(Backup.timestamp.desc()).limit(limit).all()


def delete_backup(name):
    backup = Backup.query.filter_by(name=name).first()
    if not backup:
        raise BackupNotFound(name)
    db.session.delete(backup)
    _log('backup_deleted', name)
    db.session.commit()
    logger.info(f"Backup deleted: {name}")


def clear_all_backups():
    deleted = Backup.query.delete()
    _log('all_backups_cleared', deleted_count=deleted)
    db.session.commit()
    logger.info(f"All backups cleared: {deleted}")
    return deleted
