"""
pytest 공통 설정
테스트 환경(인메모리 DB, NullCache, Rate Limit 비활성화)으로 앱을 로드합니다.
"""
import os
from unittest.mock import patch

import pytest

os.environ['FLASK_ENV'] = 'testing'

from app import app as flask_app  # noqa: E402
from models import db, User, SongDetail  # noqa: E402


@pytest.fixture
def app():
    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture(autouse=True)
def sheet_songs():
    """구글 시트 호출 차단 (기본은 빈 시트)"""
    with patch('app.fetch_songs_from_sheet', return_value=[]) as mock_fetch:
        yield mock_fetch


def _create_user(channel_id, name, is_admin=False):
    user = User(channel_id=channel_id, channel_name=name, is_admin=is_admin)
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def user(app):
    return _create_user('UC_user', '시청자')


@pytest.fixture
def other_user(app):
    return _create_user('UC_other', '다른시청자')


@pytest.fixture
def admin(app):
    return _create_user('UC_admin', '관리자', is_admin=True)


def login(client, user):
    with client.session_transaction() as sess:
        sess['user_id'] = user.id


@pytest.fixture
def user_client(client, user):
    login(client, user)
    return client


@pytest.fixture
def admin_client(client, admin):
    login(client, admin)
    return client


@pytest.fixture
def song(app):
    song = SongDetail(title='좋은 날', artist='아이유', language='Korean', search_tags=['3단고음'])
    db.session.add(song)
    db.session.commit()
    return song
