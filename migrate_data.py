"""
Songbook 레거시 데이터 마이그레이션 유틸리티
문서 DB에서 내보낸 JSON(mongoexport) 데이터를 SQL 데이터베이스로 옮깁니다.

사용법:
    python migrate_data.py <export_dir>

export_dir에는 songdetails.json, songrequests.json, users.json이 있어야 합니다.
(JSON 배열 또는 한 줄에 한 문서씩 있는 JSON Lines 모두 지원)
"""
import os
import re
import sys
import json
import argparse
from datetime import datetime, timezone

from sqlalchemy import DateTime
from sqlalchemy.exc import IntegrityError

from models import db, User, SongDetail, SongRequest

_CAMEL_BOUNDARY_RE = re.compile(r'(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])')

# 테이블 -> 내보내기 파일 이름
EXPORT_FILES = {
    'users': 'users.json',
    'song_details': 'songdetails.json',
    'song_requests': 'songrequests.json',
}


def load_json_file(filepath):
    """JSON 배열 또는 JSON Lines 파일 로드"""
    if not os.path.exists(filepath):
        print(f"  ⚠️ 파일 없음: {filepath}")
        return []
    try:
        with open(filepath, 'r', encoding='utf-8') as f:
            content = f.read().strip()
    except OSError as e:
        print(f"  ⚠️ 파일 읽기 실패: {filepath} - {e}")
        return []
    if not content:
        return []

    if content.startswith('['):
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            print(f"  ⚠️ JSON 로드 실패: {filepath} - {e}")
            return []

    documents = []
    for line_number, line in enumerate(content.splitlines(), 1):
        line = line.strip()
        if not line:
            continue
        try:
            documents.append(json.loads(line))
        except json.JSONDecodeError as e:
            print(f"  ⚠️ {line_number}번째 줄 건너뜀: {e}")
    return documents


def parse_datetime(value):
    """ISO 문자열, epoch 밀리초, datetime을 naive UTC datetime으로 변환"""
    if value in (None, ''):
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        dt = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
        except ValueError:
            return None
    if dt.tzinfo:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def camel_to_snake(name):
    """'selectedMRIndex' -> 'selected_mr_index'"""
    return _CAMEL_BOUNDARY_RE.sub('_', name).lower()


def unwrap_extended_json(value):
    """$oid, $date, $numberLong 같은 확장 JSON 래퍼를 일반 값으로 변환하고 키를 snake_case로 변경"""
    if isinstance(value, list):
        return [unwrap_extended_json(v) for v in value]
    if not isinstance(value, dict):
        return value

    if '$oid' in value:
        return value['$oid']
    if '$date' in value:
        raw = value['$date']
        if isinstance(raw, dict):
            raw = int(raw.get('$numberLong', 0))
        dt = parse_datetime(raw)
        return dt.isoformat() if dt else None
    for number_key in ('$numberLong', '$numberInt'):
        if number_key in value:
            return int(value[number_key])
    if '$numberDouble' in value:
        return float(value['$numberDouble'])

    return {camel_to_snake(k): unwrap_extended_json(v) for k, v in value.items()}


def normalize_document(doc):
    doc = unwrap_extended_json(doc)
    if '_id' in doc:
        doc['id'] = str(doc.pop('_id'))
    doc.pop('__v', None)
    return doc


def build_row(model, doc):
    """문서 값 중 모델 컬럼에 해당하는 값만 골라 모델 객체 생성"""
    values = {}
    for column in model.__table__.columns:
        if column.name not in doc:
            continue
        value = doc[column.name]
        if isinstance(column.type, DateTime):
            value = parse_datetime(value)
        values[column.name] = value
    return model(**values)


def _user_row(doc):
    preferences = doc.get('preferences') or {}
    doc['theme'] = preferences.get('theme', 'system')
    doc['default_playlist_view'] = preferences.get('default_playlist_view', 'grid')
    doc['channel_name'] = doc.get('channel_name') or doc.get('display_name') or doc.get('channel_id')
    return build_row(User, doc)


def _song_detail_row(doc):
    if doc.get('last_sung_date'):
        sung = parse_datetime(doc['last_sung_date'])
        doc['last_sung_date'] = sung.strftime('%Y-%m-%d') if sung else None
    doc.setdefault('status', 'active')
    song = build_row(SongDetail, doc)
    song.check_mr_selection()
    return song


def _song_request_row(doc):
    doc['recommended_by'] = [str(u) for u in doc.get('recommended_by') or []]
    if doc.get('original_submitter'):
        doc['original_submitter'] = str(doc['original_submitter'])
    if not doc.get('original_submitter') or not doc.get('original_submitter_name'):
        raise ValueError('제출자 정보가 없습니다.')
    doc.setdefault('status', 'active')
    return build_row(SongRequest, doc)


def _migrate_documents(documents, exists, make_row, label):
    migrated = skipped = failed = 0
    for raw in documents:
        doc = normalize_document(raw)
        if exists(doc):
            skipped += 1
            continue
        try:
            row = make_row(doc)
        except (ValueError, TypeError) as e:
            print(f"  ⚠️ {label} 건너뜀 ({doc.get('id')}): {e}")
            failed += 1
            continue
        db.session.add(row)
        try:
            db.session.commit()
        except IntegrityError as e:
            db.session.rollback()
            print(f"  ⚠️ {label} 저장 실패 ({doc.get('id')}): {e.orig}")
            failed += 1
            continue
        migrated += 1

    print(f"  ✅ {migrated}개 {label} 마이그레이션 완료 (중복 {skipped}개, 실패 {failed}개)")
    return {'migrated': migrated, 'skipped': skipped, 'failed': failed}


def migrate_users(export_dir):
    """사용자 마이그레이션 (같은 채널 ID는 건너뜀)"""
    print("\n👤 사용자 마이그레이션 중...")
    documents = load_json_file(os.path.join(export_dir, EXPORT_FILES['users']))
    return _migrate_documents(
        documents,
        lambda doc: not doc.get('channel_id')
        or User.query.filter_by(channel_id=doc['channel_id']).first() is not None,
        _user_row,
        '사용자'
    )


def migrate_song_details(export_dir):
    """노래책 곡 마이그레이션 (같은 제목은 건너뜀)"""
    print("\n🎵 노래책 곡 마이그레이션 중...")
    documents = load_json_file(os.path.join(export_dir, EXPORT_FILES['song_details']))
    return _migrate_documents(
        documents,
        lambda doc: SongDetail.query.filter_by(title=(doc.get('title') or '').strip()).first() is not None,
        _song_detail_row,
        '곡'
    )


def migrate_song_requests(export_dir):
    """추천곡 마이그레이션 (같은 제목+아티스트는 건너뜀)"""
    print("\n📝 추천곡 마이그레이션 중...")
    documents = load_json_file(os.path.join(export_dir, EXPORT_FILES['song_requests']))
    return _migrate_documents(
        documents,
        lambda doc: SongRequest.query.filter_by(
            title=doc.get('title'), artist=doc.get('artist')).first() is not None,
        _song_request_row,
        '추천곡'
    )


def migrate_all(app, export_dir):
    """전체 데이터 마이그레이션"""
    print("=" * 50)
    print("🚀 Songbook 데이터 마이그레이션 시작")
    print("=" * 50)
    print(f"📂 내보내기 디렉토리: {export_dir}")

    with app.app_context():
        db.create_all()
        summary = {
            'users': migrate_users(export_dir),
            'song_details': migrate_song_details(export_dir),
            'song_requests': migrate_song_requests(export_dir),
        }

    print("\n" + "=" * 50)
    for table, result in summary.items():
        print(f"  {table}: {result['migrated']} migrated, {result['skipped']} skipped, {result['failed']} failed")
    print("✅ 데이터 마이그레이션 완료!")
    print("=" * 50)
    return summary


def main(argv=None):
    parser = argparse.ArgumentParser(description='문서 DB 내보내기 데이터를 Songbook 데이터베이스로 마이그레이션')
    parser.add_argument('export_dir', help='songdetails.json, songrequests.json, users.json이 있는 디렉토리')
    args = parser.parse_args(argv)

    if not os.path.isdir(args.export_dir):
        print(f"❌ 디렉토리를 찾을 수 없습니다: {args.export_dir}")
        return 1

    from flask import Flask
    from config import get_config

    app = Flask(__name__)
    config_obj = get_config()
    app.config.from_object(config_obj)
    config_obj.init_app(app)
    db.init_app(app)

    migrate_all(app, args.export_dir)
    return 0


if __name__ == '__main__':
    sys.exit(main())
