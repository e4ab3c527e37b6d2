"""
Songbook API 테스트
"""
from datetime import datetime
from unittest.mock import patch

import pytest
import requests

from conftest import login
from models import db, SongDetail, SongRequest, SongVideo, YouTubeVideo, YouTubeComment, LiveClip
from sheets import SheetsError

VIDEO_URL = 'https://www.youtube.com/watch?v=abc123'


# ============== 공통 ==============

def test_unknown_api_returns_json_404(client):
    response = client.get('/api/does-not-exist')
    assert response.status_code == 404
    assert response.get_json()['success'] is False


def test_health(client):
    response = client.get('/api/health')
    assert response.status_code == 200
    assert response.get_json()['database'] == 'ok'


def test_login_and_admin_required(client, user):
    assert client.get('/api/playlists').status_code == 401
    login(client, user)
    assert client.get('/api/admin/songs').status_code == 403


# ============== 노래책 ==============

def test_songs_lists_database_songs_when_sheet_empty(client, song):
    data = client.get('/api/songs').get_json()
    assert data['success'] is True
    assert data['total'] == 1
    assert data['songs'][0]['id'] == song.id
    assert data['songs'][0]['source'] == 'database'


def test_songs_merges_sheet_rows(client, song, sheet_songs):
    sheet_songs.return_value = [
        {'id': 'song-1', 'title': '좋은날', 'artist': '아이유', 'language': 'Korean', 'mr_links': [],
         'lyrics': '가사', 'tags': [], 'date_added': '2024-01-01', 'source': 'sheet'},
        {'id': 'song-2', 'title': 'Dynamite', 'artist': 'BTS', 'language': 'English', 'mr_links': [],
         'lyrics': '', 'tags': [], 'date_added': '2024-01-01', 'source': 'sheet'},
    ]
    data = client.get('/api/songs').get_json()
    assert data['total'] == 2
    merged = data['songs'][0]
    assert merged['id'] == song.id
    assert merged['sheet_id'] == 'song-1'
    assert merged['source'] == 'merged'


def test_songs_falls_back_when_sheet_fails(client, song, sheet_songs):
    sheet_songs.side_effect = SheetsError('API_KEY_INVALID')
    data = client.get('/api/songs').get_json()
    assert data['success'] is True
    assert data['total'] == 1
    assert data['sheet_error']['title'] == 'API 키가 유효하지 않습니다'


@pytest.mark.parametrize('query, expected', [
    ('좋은', 1),
    ('ㅈㅇㄴ', 1),
    ('dkdldb', 1),
    ('3단', 1),
    ('트로트', 0),
])
def test_songs_search(client, song, query, expected):
    data = client.get('/api/songs', query_string={'search': query}).get_json()
    assert data['total'] == expected


def test_songs_language_and_favorite_filters(client, song):
    assert client.get('/api/songs?language=English').get_json()['total'] == 0
    assert client.get('/api/songs?language=Korean').get_json()['total'] == 1
    assert client.get('/api/songs?favorite=true').get_json()['total'] == 0


def test_get_song(client, song):
    data = client.get(f'/api/songs/{song.id}').get_json()
    assert data['song']['title'] == '좋은 날'
    assert data['song']['like_count'] == 0
    assert client.get('/api/songs/unknown').status_code == 404


def test_update_song_validates_fields(admin_client, song):
    url = f'/api/songs/{song.id}'
    assert admin_client.put(url, json={'key_adjustment': 20}).status_code == 400
    assert admin_client.put(url, json={'image_url': 'not-a-url'}).status_code == 400
    assert admin_client.put(url, json={'language': 'Klingon'}).status_code == 400
    assert admin_client.put(url, json={
        'mr_links': [{'url': 'https://mr.example/1'}], 'selected_mr_index': 1
    }).status_code == 400

    response = admin_client.put(url, json={
        'key_adjustment': -3,
        'mr_links': [{'url': 'https://mr.example/1', 'skip_seconds': 5}],
        'selected_mr_index': 0,
        'is_favorite': True,
    })
    assert response.status_code == 200
    updated = response.get_json()['song']
    assert updated['key_adjustment'] == -3
    assert updated['mr_links'][0]['skip_seconds'] == 5
    assert updated['is_favorite'] is True


def test_update_song_requires_admin(user_client, song):
    assert user_client.put(f'/api/songs/{song.id}', json={'key_adjustment': 1}).status_code == 403


def test_create_song(admin_client, song):
    response = admin_client.post('/api/songs', json={'title': '밤편지', 'artist': '아이유'})
    assert response.status_code == 201
    assert admin_client.post('/api/songs', json={'title': '좋은 날', 'artist': '아이유'}).status_code == 400
    assert admin_client.post('/api/songs', json={'title': '제목만'}).status_code == 400


def test_delete_song_is_soft(admin_client, song):
    response = admin_client.delete(f'/api/songs/{song.id}')
    assert response.status_code == 200
    assert db.session.get(SongDetail, song.id).status == 'deleted'
    assert admin_client.get(f'/api/songs/{song.id}').status_code == 404
    assert admin_client.get('/api/songs').get_json()['total'] == 0


def test_song_videos(user_client, song):
    url = f'/api/songs/{song.id}/videos'
    payload = {'video_url': VIDEO_URL, 'sung_date': '2024-03-15', 'start_time': 65, 'end_time': 300}

    response = user_client.post(url, json=payload)
    assert response.status_code == 201
    video = response.get_json()['video']
    assert video['video_id'] == 'abc123'
    assert video['is_verified'] is False

    assert user_client.post(url, json=payload).status_code == 409
    assert user_client.post(url, json={**payload, 'video_url': 'https://vimeo.com/1'}).status_code == 400
    assert user_client.post(url, json={**payload, 'video_url': VIDEO_URL + '2', 'end_time': 10}).status_code == 400

    videos = user_client.get(url).get_json()['videos']
    assert len(videos) == 1


def test_recalculate_song_stats(admin_client, admin, song):
    db.session.add(SongVideo(song_id=song.id, video_url=VIDEO_URL, video_id='abc123',
                             sung_date=datetime(2024, 3, 15)))
    db.session.add(SongVideo(song_id=song.id, video_url='https://youtu.be/def', video_id='def',
                             sung_date=datetime(2024, 1, 1)))
    db.session.commit()

    data = admin_client.post('/api/admin/recalculate-song-stats').get_json()
    assert data['updated'] == 1
    refreshed = db.session.get(SongDetail, song.id)
    assert refreshed.sung_count == 2
    assert refreshed.last_sung_date == '2024-03-15'


def test_admin_songs_status_and_stats(admin_client, song):
    data = admin_client.get('/api/admin/songs').get_json()
    assert data['stats']['total'] == 1
    assert data['songs'][0]['status'] == 'new'
    assert data['songs'][0]['record_status'] == 'active'


# ============== 라이브 영상 / 클립 ==============

def add_clip(song, video_id, **fields):
    clip = SongVideo(
        song_id=song.id, title=song.title, artist=song.artist,
        video_url=f'https://youtu.be/{video_id}', video_id=video_id,
        sung_date=fields.pop('sung_date', datetime(2024, 3, 15)), **fields
    )
    db.session.add(clip)
    db.session.commit()
    return clip


def test_video_update_and_delete_by_owner(client, user, other_user, song):
    login(client, user)
    payload = {'video_url': VIDEO_URL, 'sung_date': '2024-03-15', 'start_time': 65}
    video_id = client.post(f'/api/songs/{song.id}/videos', json=payload).get_json()['video']['id']
    url = f'/api/videos/{video_id}'

    assert client.get(url).get_json()['video']['start_time'] == 65
    assert client.get('/api/videos/missing').status_code == 404

    response = client.put(url, json={
        'video_url': 'https://youtu.be/xyz789', 'sung_date': '2024-04-01', 'end_time': 200, 'description': '앵콜'
    })
    assert response.status_code == 200
    video = response.get_json()['video']
    assert video['video_id'] == 'xyz789'
    assert video['thumbnail_url'] == 'https://img.youtube.com/vi/xyz789/mqdefault.jpg'
    assert (video['start_time'], video['end_time']) == (65, 200)
    assert video['description'] == '앵콜'
    assert db.session.get(SongDetail, song.id).last_sung_date == '2024-04-01'

    assert client.put(url, json={'end_time': 10}).status_code == 400
    assert client.put(url, json={'sung_date': 'yesterday'}).status_code == 400
    assert client.put(url, json={'video_url': 'https://vimeo.com/1'}).status_code == 400

    login(client, other_user)
    assert client.put(url, json={'description': '내 영상'}).status_code == 403
    assert client.delete(url).status_code == 403

    login(client, user)
    assert client.delete(url).status_code == 200
    assert client.get(url).status_code == 404
    refreshed = db.session.get(SongDetail, song.id)
    assert refreshed.sung_count == 0
    assert refreshed.last_sung_date is None


def test_video_update_permissions_and_duplicates(client, user, other_user, admin, song):
    # 예전 데이터는 등록자를 채널 ID로 저장
    legacy = add_clip(song, 'aaa', added_by=user.channel_id)
    add_clip(song, 'bbb', added_by=other_user.id)
    url = f'/api/videos/{legacy.id}'

    login(client, user)
    assert client.put(url, json={'description': '첫 무대'}).status_code == 200
    assert client.put(url, json={'video_url': 'https://youtu.be/bbb'}).status_code == 409

    login(client, admin)
    assert client.delete(url).status_code == 200
    refreshed = db.session.get(SongDetail, song.id)
    assert refreshed.sung_count == 1
    assert refreshed.last_sung_date == '2024-03-15'


def test_video_routes_require_login(client, song):
    clip = add_clip(song, 'aaa')
    assert client.get(f'/api/videos/{clip.id}').status_code == 200
    assert client.put(f'/api/videos/{clip.id}', json={}).status_code == 401
    assert client.delete(f'/api/videos/{clip.id}').status_code == 401


def test_admin_clips_list_filters_and_stats(admin_client, song):
    add_clip(song, 'aaa', added_by_name='팬1', is_verified=True, sung_date=datetime(2024, 1, 1))
    add_clip(song, 'bbb', added_by_name='팬2', description='앵콜 무대', sung_date=datetime(2024, 3, 1))
    add_clip(song, 'ccc', added_by_name='팬2', sung_date=datetime(2024, 2, 1))

    def video_ids(query=''):
        return [clip['video_id'] for clip in admin_client.get(f'/api/admin/clips{query}').get_json()['clips']]

    data = admin_client.get('/api/admin/clips').get_json()
    assert data['pagination']['total'] == 3
    assert data['clips'][0]['song_detail']['title'] == '좋은 날'
    stats = data['stats']
    assert (stats['total'], stats['verified'], stats['unverified']) == (3, 1, 2)
    assert stats['top_contributors'][0] == {'name': '팬2', 'count': 2}
    assert stats['top_songs'] == [{'song_id': song.id, 'title': '좋은 날', 'artist': '아이유', 'count': 3}]

    assert sorted(video_ids('?filter_by=unverified')) == ['bbb', 'ccc']
    assert video_ids('?filter_by=verified') == ['aaa']
    assert video_ids('?sort_by=sung_date') == ['bbb', 'ccc', 'aaa']
    assert video_ids('?sort_by=verified')[0] == 'aaa'
    assert video_ids('?search=앵콜') == ['bbb']
    assert video_ids('?added_by=팬1') == ['aaa']
    assert video_ids(f'?song_id={song.id}&limit=2') != []
    assert admin_client.get('/api/admin/clips?sort_by=random').status_code == 400
    assert admin_client.get('/api/admin/clips?filter_by=odd').status_code == 400


def test_admin_clip_actions(admin_client, admin, song):
    clip_id = add_clip(song, 'aaa', start_time=10).id
    song.sung_count = 1
    song.last_sung_date = '2024-03-15'
    db.session.commit()

    def patch(action, **data):
        return admin_client.patch('/api/admin/clips', json={'clip_id': clip_id, 'action': action, 'data': data})

    verified = patch('verify').get_json()['clip']
    assert verified['is_verified'] is True
    assert verified['verified_by'] == admin.id
    assert verified['verified_at'] is not None

    unverified = patch('unverify').get_json()['clip']
    assert unverified['is_verified'] is False
    assert unverified['verified_by'] is None

    timed = patch('update-times', start_time=30, end_time=90).get_json()['clip']
    assert (timed['start_time'], timed['end_time']) == (30, 90)
    assert patch('update-times', end_time=20).status_code == 400
    assert patch('update-description', description='풀버전').get_json()['clip']['description'] == '풀버전'

    assert admin_client.patch('/api/admin/clips', json={'clip_id': clip_id}).status_code == 400
    assert patch('explode').status_code == 400
    assert admin_client.patch('/api/admin/clips', json={'clip_id': 'missing', 'action': 'verify'}).status_code == 404

    assert admin_client.delete('/api/admin/clips').status_code == 400
    assert admin_client.delete('/api/admin/clips?clip_id=missing').status_code == 404
    assert admin_client.delete(f'/api/admin/clips?clip_id={clip_id}').status_code == 200
    assert SongVideo.query.count() == 0
    refreshed = db.session.get(SongDetail, song.id)
    assert refreshed.sung_count == 0
    assert refreshed.last_sung_date is None


def test_admin_clips_requires_admin(user_client):
    assert user_client.get('/api/admin/clips').status_code == 403


# ============== 좋아요 ==============

def test_toggle_like(user_client, song):
    first = user_client.post('/api/likes', json={'song_id': song.id}).get_json()
    assert first['liked'] is True
    assert first['like_count'] == 1

    second = user_client.post('/api/likes', json={'song_id': song.id}).get_json()
    assert second['liked'] is False
    assert second['like_count'] == 0

    assert user_client.post('/api/likes', json={}).status_code == 400
    assert user_client.post('/api/likes', json={'song_id': 'missing'}).status_code == 404


def test_likes_bulk(user_client, song):
    user_client.post('/api/likes', json={'song_id': song.id})
    data = user_client.post('/api/likes-bulk', json={'song_ids': [song.id, 'other', song.id]}).get_json()

    assert data['requested'] == 2
    assert data['batches'] == 1
    assert data['total'] == 1
    assert data['likes'][song.id] == {'count': 1, 'is_liked': True}
    assert data['likes']['other'] == {'count': 0, 'is_liked': False}


def test_likes_bulk_batches(client, app):
    app.config['LIKES_BATCH_SIZE'] = 2
    try:
        data = client.post('/api/likes-bulk', json={'song_ids': ['a', 'b', 'c']}).get_json()
    finally:
        app.config['LIKES_BATCH_SIZE'] = 100
    assert data['batches'] == 2


# ============== 노래 추천 게시판 ==============

def create_suggestion(client, **fields):
    payload = {'title': '밤편지', 'artist': '아이유', 'genre': '발라드', 'search_tags': ['잔잔한']}
    payload.update(fields)
    return client.post('/api/suggestions', json=payload)


def test_create_suggestion(user_client, user):
    response = create_suggestion(user_client, description='꼭 불러주세요')
    assert response.status_code == 201
    suggestion = response.get_json()['suggestion']
    assert suggestion['original_submitter'] == user.id
    assert suggestion['original_submitter_name'] == '시청자'
    assert suggestion['edit_history'][0]['changes'] == '곡 최초 등록'
    assert suggestion['status'] == 'active'


def test_create_suggestion_requires_login_and_fields(client, user):
    assert create_suggestion(client).status_code == 401
    login(client, user)
    assert client.post('/api/suggestions', json={'title': '제목만'}).status_code == 400


def test_create_suggestion_duplicate(user_client):
    create_suggestion(user_client)
    response = create_suggestion(user_client)
    assert response.status_code == 400
    assert response.get_json()['existing_id']


def test_list_suggestions_search_and_pagination(user_client):
    create_suggestion(user_client)
    create_suggestion(user_client, title='좋은 날', search_tags=['고음'], genre='댄스')

    data = user_client.get('/api/suggestions?limit=1').get_json()
    assert len(data['suggestions']) == 1
    assert data['pagination']['total'] == 2
    assert data['pagination']['total_pages'] == 2

    assert user_client.get('/api/suggestions?search=잔잔').get_json()['pagination']['total'] == 1
    assert user_client.get('/api/suggestions?genre=댄스').get_json()['suggestions'][0]['title'] == '좋은 날'
    assert user_client.get('/api/suggestions?sort=unknown').status_code == 400


def test_list_suggestions_trending_sort(user_client):
    create_suggestion(user_client)
    create_suggestion(user_client, title='좋은 날')
    first = SongRequest.query.filter_by(title='밤편지').one()
    second = SongRequest.query.filter_by(title='좋은 날').one()
    first.recommendation_count, first.view_count = 1, 0    # 3점
    second.recommendation_count, second.view_count = 0, 5  # 5점
    db.session.commit()

    titles = [s['title'] for s in user_client.get('/api/suggestions?sort=trending').get_json()['suggestions']]
    assert titles == ['좋은 날', '밤편지']
    titles = [s['title'] for s in user_client.get('/api/suggestions?sort=recommended').get_json()['suggestions']]
    assert titles == ['밤편지', '좋은 날']


def test_get_suggestion_increments_views(user_client):
    suggestion_id = create_suggestion(user_client).get_json()['suggestion']['id']
    assert user_client.get(f'/api/suggestions/{suggestion_id}').get_json()['suggestion']['view_count'] == 1
    assert user_client.get(f'/api/suggestions/{suggestion_id}').get_json()['suggestion']['view_count'] == 2
    assert user_client.get('/api/suggestions/missing').status_code == 404


def test_update_suggestion_appends_history(user_client):
    suggestion_id = create_suggestion(user_client).get_json()['suggestion']['id']
    url = f'/api/suggestions/{suggestion_id}'

    response = user_client.put(url, json={'genre': '인디', 'difficulty': '어려움'})
    assert response.status_code == 200
    history = response.get_json()['suggestion']['edit_history']
    assert len(history) == 2
    assert sorted(history[1]['fields_changed']) == ['difficulty', 'genre']

    assert user_client.put(url, json={'genre': '인디'}).status_code == 400
    assert user_client.put(url, json={'key_adjustment': 30}).status_code == 400


def test_recommend_toggle(user_client, user):
    suggestion_id = create_suggestion(user_client).get_json()['suggestion']['id']
    url = f'/api/suggestions/{suggestion_id}/recommend'

    first = user_client.post(url).get_json()
    assert first['recommended'] is True
    assert first['recommendation_count'] == 1
    assert db.session.get(SongRequest, suggestion_id).recommended_by == [user.id]

    second = user_client.post(url).get_json()
    assert second['recommended'] is False
    assert second['recommendation_count'] == 0


def test_recommend_count_never_negative(user_client, user):
    suggestion_id = create_suggestion(user_client).get_json()['suggestion']['id']
    suggestion = db.session.get(SongRequest, suggestion_id)
    suggestion.recommended_by = [user.id]
    suggestion.recommendation_count = 0
    db.session.commit()

    data = user_client.post(f'/api/suggestions/{suggestion_id}/recommend').get_json()
    assert data['recommendation_count'] == 0


def test_promote_suggestion(client, user, admin):
    login(client, user)
    suggestion_id = create_suggestion(client, description='꼭 불러주세요', language='Korean') \
        .get_json()['suggestion']['id']

    url = f'/api/suggestions/{suggestion_id}/promote'
    assert client.post(url).status_code == 403

    login(client, admin)
    response = client.post(url)
    assert response.status_code == 200
    data = response.get_json()
    assert data['song']['title'] == '밤편지'
    assert data['song']['title_alias'] == '밤편지'
    assert data['song']['personal_notes'] == '꼭 불러주세요'
    assert data['suggestion']['status'] == 'approved'
    assert data['suggestion']['promoted_to_songbook'] is True
    assert data['suggestion']['songbook_id'] == data['song']['id']
    assert data['suggestion']['edit_history'][-1]['changes'] == '노래책으로 승격'

    assert client.post(url).status_code == 400


def test_promote_rejects_existing_song(client, user, admin, song):
    login(client, user)
    suggestion_id = create_suggestion(client, title='좋은 날').get_json()['suggestion']['id']
    login(client, admin)
    response = client.post(f'/api/suggestions/{suggestion_id}/promote')
    assert response.status_code == 400
    assert db.session.get(SongRequest, suggestion_id).promoted_to_songbook is False


def test_delete_suggestion_admin_only(client, user, admin):
    login(client, user)
    suggestion_id = create_suggestion(client).get_json()['suggestion']['id']
    assert client.delete(f'/api/suggestions/{suggestion_id}').status_code == 403
    login(client, admin)
    assert client.delete(f'/api/suggestions/{suggestion_id}').status_code == 200
    assert SongRequest.query.count() == 0


def test_suggestion_stats(user_client):
    create_suggestion(user_client)
    create_suggestion(user_client, title='좋은 날')
    suggestion = SongRequest.query.filter_by(title='좋은 날').one()
    suggestion.status = 'pending_approval'
    suggestion.recommendation_count = 4
    db.session.commit()

    stats = user_client.get('/api/suggestions/stats').get_json()['stats']
    assert stats['total_suggestions'] == 2
    assert stats['weekly_new'] == 2
    assert stats['total_recommendations'] == 4
    assert stats['pending_promotions'] == 1
    assert stats['active_contributors'] == 1


# ============== 플레이리스트 ==============

def test_playlist_flow(client, user, other_user, song):
    login(client, user)
    response = client.post('/api/playlists', json={'name': '노동요', 'tags': ['신나는']})
    assert response.status_code == 201
    playlist_id = response.get_json()['playlist']['id']

    songs_url = f'/api/playlists/{playlist_id}/songs'
    added = client.post(songs_url, json={'song_id': song.id})
    assert added.status_code == 201
    assert added.get_json()['playlist']['songs'][0]['order'] == 0
    assert client.post(songs_url, json={'song_id': song.id}).status_code == 409
    assert client.post(songs_url, json={'song_id': 'missing'}).status_code == 404

    assert client.put(f'/api/playlists/{playlist_id}', json={'name': '출근길'}).get_json()['playlist']['name'] == '출근길'
    assert client.get('/api/playlists').get_json()['playlists'][0]['song_count'] == 1

    login(client, other_user)
    assert client.get(f'/api/playlists/{playlist_id}').status_code == 404

    login(client, user)
    assert client.delete(songs_url, json={'song_id': song.id}).status_code == 200
    assert client.delete(songs_url, json={'song_id': song.id}).status_code == 404
    assert client.delete(f'/api/playlists/{playlist_id}').status_code == 200
    assert client.get('/api/playlists').get_json()['playlists'] == []


# ============== 사용자 ==============

def test_user_profile(user_client):
    data = user_client.get('/api/user/profile').get_json()
    assert data['user']['preferences']['theme'] == 'system'
    assert data['user']['stats']['likes'] == 0

    response = user_client.put('/api/user/profile', json={'preferences': {'theme': 'dark'}, 'display_name': '애청자'})
    assert response.status_code == 200
    assert response.get_json()['user']['preferences']['theme'] == 'dark'
    assert response.get_json()['user']['display_name'] == '애청자'

    assert user_client.put('/api/user/profile', json={'preferences': {'theme': 'neon'}}).status_code == 400


def test_user_likes(client, user, song):
    assert client.get('/api/user/likes').status_code == 401

    other = SongDetail(title='밤편지', artist='아이유', language='Korean')
    db.session.add(other)
    db.session.commit()

    login(client, user)
    client.post('/api/likes', json={'song_id': song.id})
    client.post('/api/likes', json={'song_id': other.id})

    data = client.get('/api/user/likes').get_json()
    assert [like['song']['title'] for like in data['likes']] == ['밤편지', '좋은 날']
    assert data['likes'][1]['song']['language'] == 'Korean'
    assert data['pagination']['total'] == 2

    first_page = client.get('/api/user/likes?limit=1').get_json()
    assert len(first_page['likes']) == 1
    assert first_page['pagination']['has_next'] is True


def test_admin_users(admin_client, admin, user):
    data = admin_client.get('/api/admin/users').get_json()
    assert data['pagination']['total'] == 2

    response = admin_client.patch(f'/api/admin/users/{user.id}', json={'is_admin': True})
    assert response.get_json()['user']['is_admin'] is True
    assert admin_client.patch(f'/api/admin/users/{admin.id}', json={'is_admin': False}).status_code == 400
    assert admin_client.patch('/api/admin/users/missing', json={'is_admin': True}).status_code == 404


# ============== YouTube 댓글 / 타임라인 ==============

TIMELINE_HTML = (
    f'<a href="{VIDEO_URL}&amp;t=65">1:05</a> 아이유 - 좋은 날<br>'
    f'<a href="{VIDEO_URL}&amp;t=300">5:00</a> 잔나비 - 주저하는 연인들을 위해'
)

CHANNEL_VIDEOS = [{
    'video_id': 'abc123',
    'title': '[아야] 24.03.15 노래방송',
    'published_at': datetime(2024, 3, 15),
    'thumbnail_url': 'https://img.youtube.com/vi/abc123/mqdefault.jpg',
}]

COMMENTS = [
    {'comment_id': 'c1', 'author_name': '팬', 'text_content': TIMELINE_HTML,
     'published_at': datetime(2024, 3, 16), 'like_count': 5},
    {'comment_id': 'c2', 'author_name': '팬2', 'text_content': '오늘 방송 최고',
     'published_at': datetime(2024, 3, 16), 'like_count': 0},
]


@pytest.fixture
def synced(admin_client):
    with patch('app.list_channel_videos', return_value=CHANNEL_VIDEOS), \
            patch('app.get_video_comments', return_value=COMMENTS):
        response = admin_client.post('/api/youtube-comments', json={'action': 'sync-channel'})
    assert response.status_code == 200
    return response.get_json()


def test_sync_channel(synced):
    assert synced['stats']['processed_videos'] == 1
    assert synced['stats']['new_comments'] == 2
    assert synced['stats']['new_timeline_comments'] == 1
    assert synced['channel']['total_videos'] == 1
    assert synced['channel']['timeline_comments'] == 1

    video = YouTubeVideo.query.filter_by(video_id='abc123').one()
    assert video.total_comments == 2
    assert YouTubeComment.query.filter_by(comment_id='c1').one().is_timeline is True


def test_sync_channel_listing_error(admin_client):
    from youtube_client import YouTubeAPIError
    with patch('app.list_channel_videos', side_effect=YouTubeAPIError('채널을 찾을 수 없습니다.')):
        response = admin_client.post('/api/youtube-comments', json={'action': 'sync-channel'})
    assert response.status_code == 502


def test_youtube_comment_queries(admin_client, synced):
    stats = admin_client.get('/api/youtube-comments?action=channel-stats').get_json()
    assert stats['videos'][0]['video_id'] == 'abc123'

    details = admin_client.get('/api/youtube-comments?action=video-details&video_id=abc123&timeline_only=true')
    assert [c['comment_id'] for c in details.get_json()['comments']] == ['c1']
    assert admin_client.get('/api/youtube-comments?action=video-details').status_code == 400
    assert admin_client.get('/api/youtube-comments?action=bogus').status_code == 400


def test_update_comment_marks_manually(admin_client, synced):
    response = admin_client.post('/api/youtube-comments', json={
        'action': 'update-comment', 'comment_id': 'c2', 'is_timeline': True
    })
    assert response.get_json()['comment']['manually_marked'] is True
    assert YouTubeVideo.query.filter_by(video_id='abc123').one().timeline_comments == 2
    assert admin_client.post('/api/youtube-comments', json={
        'action': 'update-comment', 'comment_id': 'missing'
    }).status_code == 404


def test_sync_video(admin_client, synced):
    with patch('app.get_video_comments', return_value=COMMENTS):
        response = admin_client.post('/api/youtube-comments', json={'action': 'sync-video', 'video_id': 'abc123'})
    assert response.get_json()['new_comments'] == 0
    assert admin_client.post('/api/youtube-comments', json={
        'action': 'sync-video', 'video_id': 'nope'
    }).status_code == 404


def test_sync_video_network_error(admin_client, synced):
    with patch('app.get_video_comments', side_effect=requests.ConnectionError('offline')):
        response = admin_client.post('/api/youtube-comments', json={'action': 'sync-video', 'video_id': 'abc123'})
    assert response.status_code == 502
    assert response.get_json()['success'] is False


@pytest.mark.parametrize('max_videos', ['many', 0, -3, [1]])
def test_sync_channel_rejects_bad_max_videos(admin_client, max_videos):
    with patch('app.list_channel_videos') as mock_list:
        response = admin_client.post('/api/youtube-comments', json={
            'action': 'sync-channel', 'max_videos': max_videos
        })
    assert response.status_code == 400
    mock_list.assert_not_called()


def test_parse_timeline_comments(admin_client, synced, song):
    data = admin_client.post('/api/timeline-parser', json={'action': 'parse-timeline-comments'}).get_json()
    assert data['stats'] == {
        'total_videos': 1,
        'total_timeline_comments': 1,
        'parsed_items': 2,
        'relevant_items': 2,
        'matched_songs': 1,
        'unique_songs': 2,
        'duplicates_skipped': 0,
    }

    clip = db.session.get(LiveClip, 'c1_65')
    assert clip.matched_song['song_id'] == song.id
    assert clip.end_time_seconds == 300
    assert clip.uploaded_date == datetime(2024, 3, 15)
    assert clip.video_url == VIDEO_URL

    again = admin_client.post('/api/timeline-parser', json={'action': 'parse-timeline-comments'}).get_json()
    assert again['stats']['parsed_items'] == 0
    assert again['stats']['duplicates_skipped'] == 2


def test_timeline_item_actions(admin_client, synced, song):
    admin_client.post('/api/timeline-parser', json={'action': 'parse-timeline-comments'})
    url = '/api/timeline-parser'

    items = admin_client.get(f'{url}?action=get-parsed-items').get_json()['items']
    assert [item['start_time_seconds'] for item in items] == [65, 300]
    assert len(admin_client.get(f'{url}?action=get-parsed-items&matched=false').get_json()['items']) == 1

    response = admin_client.post(url, json={'action': 'update-item-relevance', 'item_id': 'c1_300', 'is_relevant': False})
    assert response.get_json()['item']['is_relevant'] is False

    response = admin_client.post(url, json={'action': 'update-item-exclusion', 'item_id': 'c1_300', 'is_excluded': True})
    assert response.get_json()['item']['is_excluded'] is True

    response = admin_client.post(url, json={'action': 'assign-song-match', 'item_id': 'c1_300', 'song_id': song.id})
    assert response.get_json()['item']['matched_song']['confidence'] == 1.0

    response = admin_client.post(url, json={'action': 'remove-song-match', 'item_id': 'c1_300'})
    assert response.get_json()['item']['matched_song'] is None

    matches = admin_client.post(url, json={'action': 'find-song-matches', 'item_id': 'c1_65'}).get_json()['matches']
    assert matches[0]['song_id'] == song.id

    response = admin_client.post(url, json={'action': 'update-live-clip', 'item_id': 'c1_65', 'end_time_seconds': 60})
    assert response.status_code == 400
    response = admin_client.post(url, json={
        'action': 'update-live-clip', 'item_id': 'c1_65', 'song_title': '좋은 날 (라이브)', 'end_time_seconds': 200
    })
    assert response.get_json()['item']['duration'] == 135

    assert admin_client.post(url, json={'action': 'remove-song-match'}).status_code == 400
    assert admin_client.post(url, json={'action': 'remove-song-match', 'item_id': 'nope'}).status_code == 404
    assert admin_client.post(url, json={'action': 'bogus'}).status_code == 400


# ============== 백업 ==============

def test_backup_routes(admin_client, song):
    url = '/api/admin/backups'

    response = admin_client.post(url, json={'action': 'backup', 'name': 'b1'})
    assert response.status_code == 201
    assert response.get_json()['backup']['metadata']['total_documents'] >= 2

    backups = admin_client.get(f'{url}?action=list-backups').get_json()['backups']
    assert [b['name'] for b in backups] == ['b1']
    collections = admin_client.get(f'{url}?action=list-collections').get_json()['collections']
    assert {'name': 'song_details', 'count': 1, 'type': 'table'} in collections

    admin_client.delete(f'/api/songs/{song.id}')
    response = admin_client.post(url, json={'action': 'restore', 'name': 'b1'})
    assert response.status_code == 200
    assert response.get_json()['success'] is True
    db.session.expire_all()
    assert db.session.get(SongDetail, song.id).status == 'active'

    assert admin_client.post(url, json={'action': 'restore', 'name': 'missing'}).status_code == 404
    assert admin_client.post(url, json={'action': 'restore'}).status_code == 400
    assert admin_client.post(url, json={'action': 'bogus'}).status_code == 400

    assert admin_client.delete(url, json={'action': 'delete-backup', 'name': 'b1'}).status_code == 200
    assert admin_client.delete(url, json={'action': 'delete-backup', 'name': 'b1'}).status_code == 404
    assert admin_client.delete(url, json={'action': 'clear-all-backups'}).get_json()['deleted_count'] == 0
