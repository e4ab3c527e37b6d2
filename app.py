"""
Songbook - 스트리머 팬사이트 백엔드
노래책, 노래 추천 게시판, 관리자 API, YouTube 타임라인 수집기
"""
import os
import time
import logging
from logging.handlers import RotatingFileHandler
from datetime import datetime, timedelta
from functools import wraps

from flask import Flask, request, jsonify, session, g
from flask.logging import default_handler
from flask_caching import Cache
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from dotenv import load_dotenv
import requests
from sqlalchemy import String, cast, func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from werkzeug.exceptions import HTTPException

# 환경변수 로드
load_dotenv()

# 설정 로드
from config import get_config
from models import (
    db, init_db, User, SongDetail, SongRequest, Playlist, PlaylistSong, Like, SongVideo,
    YouTubeChannel, YouTubeVideo, YouTubeComment, LiveClip
)
from hangul_search import song_matches_query
from sheets import (
    SheetsError, fetch_songs_from_sheet, merge_with_song_details,
    classify_song_status, summarize_songs, get_error_message
)
from timeline_parser import (
    is_timeline_comment, extract_timestamps, parse_timeline_comment,
    find_song_matches, get_best_song_match
)
from youtube_client import (
    YouTubeAPIError, list_channel_videos, get_video_comments,
    extract_video_id, is_youtube_url, thumbnail_url
)
import backup as backup_service

# Flask 앱 초기화
app = Flask(__name__)
config_obj = get_config()
app.config.from_object(config_obj)
config_obj.init_app(app)

# ============== 로깅 설정 ==============

def setup_logging():
    """애플리케이션 로깅 설정 (앱 로거와 모듈 로거가 같은 핸들러를 공유)"""
    log_level = getattr(logging, app.config.get('LOG_LEVEL', 'INFO'))
    log_dir = app.config.get('LOGS_DIR', 'logs')

    if not os.path.exists(log_dir):
        os.makedirs(log_dir)

    # 파일 핸들러 (로테이션)
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'songbook.log'),
        maxBytes=app.config.get('LOG_FILE_MAX_BYTES', 10 * 1024 * 1024),
        backupCount=app.config.get('LOG_FILE_BACKUP_COUNT', 5),
        encoding='utf-8'
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(logging.Formatter(
        '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
    ))

    # 콘솔 핸들러
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter(
        '%(asctime)s [%(levelname)s] %(message)s'
    ))

    # 루트 로거에 연결해서 sheets, backup 등 모듈 로그도 함께 기록
    root_logger = logging.getLogger()
    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)
    root_logger.setLevel(log_level)

    app.logger.removeHandler(default_handler)
    app.logger.setLevel(log_level)

    # 외부 라이브러리 로그는 경고 이상만
    logging.getLogger('urllib3').setLevel(logging.WARNING)

    app.logger.info("Songbook 애플리케이션 시작")

setup_logging()

# ============== Flask 확장 초기화 ==============

init_db(app)

# 캐싱 설정
cache = Cache(app, config={
    'CACHE_TYPE': app.config.get('CACHE_TYPE', 'SimpleCache'),
    'CACHE_DEFAULT_TIMEOUT': app.config.get('CACHE_DEFAULT_TIMEOUT', 300)
})

# Rate Limiting 설정 (RATELIMIT_ENABLED가 False면 제한 없이 통과)
limiter = Limiter(
    key_func=get_remote_address,
    app=app,
    default_limits=[app.config.get('RATELIMIT_DEFAULT', '1000 per day')],
    storage_uri=app.config.get('RATELIMIT_STORAGE_URI', 'memory://'),
    strategy=app.config.get('RATELIMIT_STRATEGY', 'fixed-window'),
    enabled=app.config.get('RATELIMIT_ENABLED', True)
)

# ============== 인증 헬퍼 ==============

def get_current_user():
    """세션의 user_id로 현재 사용자 조회"""
    user_id = session.get('user_id')
    if not user_id:
        return None
    return db.session.get(User, user_id)


def login_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        user = get_current_user()
        if not user:
            return jsonify({'success': False, 'message': '로그인이 필요합니다.'}), 401
        g.user = user
        return f(*args, **kwargs)
    return decorated_function


def admin_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        user = get_current_user()
        if not user:
            return jsonify({'success': False, 'message': '로그인이 필요합니다.'}), 401
        if not user.is_admin:
            app.logger.warning(f"Admin access denied: {user.channel_id} - {request.path}")
            return jsonify({'success': False, 'message': '관리자 권한이 필요합니다.'}), 403
        g.user = user
        return f(*args, **kwargs)
    return decorated_function

# ============== 공통 헬퍼 ==============

def error_response(message, status=400, **extra):
    return jsonify({'success': False, 'message': message, **extra}), status


def get_json_body():
    return request.get_json(silent=True) or {}


def get_action(data=None):
    """쿼리스트링 또는 요청 본문의 action 값"""
    return request.args.get('action') or (data or {}).get('action')


def get_page_args(default_limit=20, max_limit=100):
    page = max(request.args.get('page', 1, type=int), 1)
    limit = min(max(request.args.get('limit', default_limit, type=int), 1), max_limit)
    return page, limit


def pagination_dict(pagination):
    return {
        'page': pagination.page,
        'limit': pagination.per_page,
        'total': pagination.total,
        'total_pages': pagination.pages,
        'has_next': pagination.has_next,
        'has_prev': pagination.has_prev,
    }


def parse_bool(value):
    if isinstance(value, bool):
        return value
    if value is None:
        return None
    return str(value).lower() in ('true', '1', 'yes')


def parse_date(value):
    """'YYYY-MM-DD' 문자열을 datetime으로 변환 (형식이 틀리면 ValueError)"""
    return datetime.strptime((value or '')[:10], '%Y-%m-%d')


def parse_clip_times(data, start_time=0, end_time=None):
    """본문의 start_time/end_time을 기존 값 위에 적용해 (시작, 종료) 초를 반환"""
    try:
        if 'start_time' in data:
            start_time = int(data.get('start_time') or 0)
        if 'end_time' in data:
            end_time = int(data['end_time']) if data['end_time'] not in (None, '') else None
    except (ValueError, TypeError):
        raise ValueError('시간 값은 숫자여야 합니다.')
    if start_time < 0 or (end_time is not None and end_time <= start_time):
        raise ValueError('종료 시간은 시작 시간보다 커야 합니다.')
    return start_time, end_time


def normalize_mr_links(links):
    """MR 링크 목록 검증: [{url, skip_seconds, label, duration}]"""
    if not isinstance(links, list):
        raise ValueError('MR 링크는 목록이어야 합니다.')
    normalized = []
    for link in links:
        if isinstance(link, str):
            link = {'url': link}
        if not isinstance(link, dict) or not (link.get('url') or '').strip():
            raise ValueError('MR 링크에는 URL이 필요합니다.')
        skip_seconds = int(link.get('skip_seconds') or 0)
        if skip_seconds < 0:
            raise ValueError('건너뛸 시간은 0 이상이어야 합니다.')
        normalized.append({
            'url': link['url'].strip(),
            'skip_seconds': skip_seconds,
            'label': link.get('label') or '',
            'duration': link.get('duration') or '',
        })
    return normalized

# ============== 에러 핸들러 ==============

@app.errorhandler(Exception)
def handle_exception(e):
    """전역 예외 핸들러"""
    if isinstance(e, HTTPException):
        if request.path.startswith('/api/'):
            return jsonify({'success': False, 'message': e.description}), e.code
        return e
    # API 요청인 경우 JSON 응답 반환
    if request.path.startswith('/api/'):
        app.logger.error(f"API Error: {str(e)}", exc_info=True)
        db.session.rollback()
        return jsonify({
            'success': False,
            'message': f'서버 오류: {str(e)}'
        }), 500
    raise e

@app.errorhandler(404)
def not_found(e):
    """404 에러 핸들러"""
    if request.path.startswith('/api/'):
        return jsonify({'success': False, 'message': '요청한 API를 찾을 수 없습니다.'}), 404
    return str(e), 404

@app.errorhandler(500)
def internal_error(e):
    """500 에러 핸들러"""
    app.logger.error(f"Internal Server Error: {str(e)}", exc_info=True)
    if request.path.startswith('/api/'):
        return jsonify({'success': False, 'message': '내부 서버 오류가 발생했습니다.'}), 500
    return str(e), 500

@app.errorhandler(429)
def ratelimit_handler(e):
    """Rate Limit 에러 핸들러"""
    app.logger.warning(f"Rate limit exceeded: {request.remote_addr} - {request.path}")
    return jsonify({
        'success': False,
        'message': '요청 한도를 초과했습니다. 잠시 후 다시 시도해주세요.',
        'retry_after': e.description
    }), 429

# ============== 노래책 데이터 ==============

@cache.memoize(timeout=app.config.get('CACHE_SHEET_TIMEOUT', 600))
def get_sheet_songs():
    """구글 시트 곡 목록 (캐시)"""
    return fetch_songs_from_sheet(app.config.get('GOOGLE_SHEET_ID'), app.config.get('GOOGLE_SHEETS_API_KEY'))


@cache.memoize()
def get_songbook():
    """
    시트 + 데이터베이스 병합 곡 목록 (캐시)

    Returns:
        (곡 목록, 시트 오류 안내 또는 None)
    """
    sheet_error = None
    try:
        sheet_songs = get_sheet_songs()
    except SheetsError as e:
        app.logger.warning(f"Google Sheets unavailable ({e.code}), using database songs only")
        sheet_songs = []
        sheet_error = get_error_message(e.code)

    details = [song.to_dict() for song in SongDetail.query.all()]
    return merge_with_song_details(sheet_songs, details), sheet_error


def invalidate_songbook():
    cache.delete_memoized(get_songbook)


@cache.memoize(timeout=app.config.get('CACHE_CHANNEL_TIMEOUT', 1800))
def get_channel_videos(channel_id, max_videos=None):
    """채널 영상 목록 (캐시)"""
    return list_channel_videos(channel_id, max_videos=max_videos)


def get_active_song(song_id):
    song = db.session.get(SongDetail, song_id)
    if not song or song.status == 'deleted':
        return None
    return song


def song_match_candidates():
    """곡 매칭 대상 (삭제되지 않은 데이터베이스 곡)"""
    songs = SongDetail.query.filter(SongDetail.status != 'deleted').all()
    return [song.to_dict() for song in songs]

# ============== 노래책 API ==============

SONG_EDITABLE_FIELDS = (
    'title', 'artist', 'title_alias', 'artist_alias', 'language', 'lyrics', 'search_tags',
    'sung_count', 'last_sung_date', 'key_adjustment', 'is_favorite', 'mr_links',
    'selected_mr_index', 'playlists', 'personal_notes', 'image_url', 'status'
)


def apply_song_fields(song, data):
    """요청 데이터의 곡 필드를 검증하며 적용 (잘못된 값은 ValueError)"""
    for field in SONG_EDITABLE_FIELDS:
        if field not in data:
            continue
        value = data[field]
        if field == 'mr_links':
            value = normalize_mr_links(value or [])
        elif field in ('search_tags', 'playlists'):
            if not isinstance(value or [], list):
                raise ValueError(f'{field} 값은 목록이어야 합니다.')
            value = [str(v).strip() for v in (value or []) if str(v).strip()]
        elif field == 'last_sung_date' and value:
            value = parse_date(value).strftime('%Y-%m-%d')
        elif field == 'is_favorite':
            value = bool(parse_bool(value))
        elif field == 'key_adjustment' and value == '':
            value = None
        setattr(song, field, value)
    song.check_mr_selection()


@app.route('/api/songs')
@limiter.limit(app.config.get('RATELIMIT_SEARCH', '30 per minute'))
def api_songs():
    """노래책 곡 목록 (검색/언어/즐겨찾기 필터)"""
    search = request.args.get('search', '').strip()
    language = request.args.get('language', '').strip()
    favorite = parse_bool(request.args.get('favorite'))

    songs, sheet_error = get_songbook()

    if search:
        songs = [s for s in songs if song_matches_query(s, search)]
    if language:
        songs = [s for s in songs if s.get('language') == language]
    if favorite:
        songs = [s for s in songs if s.get('is_favorite')]

    result = {'success': True, 'songs': songs, 'total': len(songs)}
    if sheet_error:
        result['sheet_error'] = sheet_error
    return jsonify(result)


@app.route('/api/songs', methods=['POST'])
@admin_required
def api_create_song():
    data = get_json_body()
    if not (data.get('title') or '').strip() or not (data.get('artist') or '').strip():
        return error_response('제목과 아티스트는 필수입니다.')
    if SongDetail.query.filter_by(title=data['title'].strip()).first():
        return error_response('같은 제목의 곡이 이미 있습니다.')

    song = SongDetail(status='active')
    try:
        apply_song_fields(song, data)
    except (ValueError, TypeError) as e:
        return error_response(str(e))

    db.session.add(song)
    db.session.commit()
    invalidate_songbook()
    app.logger.info(f"Song created: {song.title} by {g.user.channel_id}")
    return jsonify({'success': True, 'song': song.to_dict()}), 201


@app.route('/api/songs/<song_id>')
def api_get_song(song_id):
    song = get_active_song(song_id)
    if not song:
        return error_response('곡을 찾을 수 없습니다.', 404)

    data = song.to_dict()
    data['like_count'] = Like.query.filter_by(song_id=song.id).count()
    user = get_current_user()
    data['is_liked'] = bool(user) and Like.query.filter_by(song_id=song.id, user_id=user.id).first() is not None
    return jsonify({'success': True, 'song': data})


@app.route('/api/songs/<song_id>', methods=['PUT'])
@admin_required
def api_update_song(song_id):
    song = get_active_song(song_id)
    if not song:
        return error_response('곡을 찾을 수 없습니다.', 404)

    data = get_json_body()
    try:
        apply_song_fields(song, data)
        db.session.commit()
    except (ValueError, TypeError) as e:
        db.session.rollback()
        return error_response(str(e))
    except IntegrityError:
        db.session.rollback()
        return error_response('같은 제목의 곡이 이미 있습니다.')

    invalidate_songbook()
    app.logger.info(f"Song updated: {song.id} by {g.user.channel_id}")
    return jsonify({'success': True, 'song': song.to_dict()})


@app.route('/api/songs/<song_id>', methods=['DELETE'])
@admin_required
def api_delete_song(song_id):
    """곡 삭제 (status를 deleted로 변경)"""
    song = get_active_song(song_id)
    if not song:
        return error_response('곡을 찾을 수 없습니다.', 404)

    song.status = 'deleted'
    db.session.commit()
    invalidate_songbook()
    app.logger.info(f"Song deleted: {song.id} by {g.user.channel_id}")
    return jsonify({'success': True, 'message': '곡이 삭제되었습니다.'})


@app.route('/api/songs/<song_id>/videos')
def api_song_videos(song_id):
    videos = SongVideo.query.filter_by(song_id=song_id).order_by(SongVideo.sung_date.desc()).all()
    return jsonify({'success': True, 'videos': [v.to_dict() for v in videos]})


@app.route('/api/songs/<song_id>/videos', methods=['POST'])
@login_required
def api_add_song_video(song_id):
    """곡 라이브 영상 등록"""
    song = get_active_song(song_id)
    if not song:
        return error_response('곡을 찾을 수 없습니다.', 404)

    data = get_json_body()
    video_url = (data.get('video_url') or '').strip()
    if not is_youtube_url(video_url):
        return error_response('올바른 YouTube URL을 입력해주세요.')

    try:
        sung_date = parse_date(data.get('sung_date'))
    except (ValueError, TypeError):
        return error_response('부른 날짜를 YYYY-MM-DD 형식으로 입력해주세요.')
    try:
        start_time, end_time = parse_clip_times(data)
    except ValueError as e:
        return error_response(str(e))

    if SongVideo.query.filter_by(song_id=song.id, video_url=video_url).first():
        return error_response('이미 등록된 영상입니다.', 409)

    video_id = extract_video_id(video_url)
    video = SongVideo(
        song_id=song.id,
        title=song.title,
        artist=song.artist,
        video_url=video_url,
        video_id=video_id,
        sung_date=sung_date,
        description=data.get('description') or '',
        start_time=start_time,
        end_time=end_time,
        added_by=g.user.id,
        added_by_name=g.user.name,
        is_verified=bool(g.user.is_admin),
        thumbnail_url=thumbnail_url(video_id)
    )
    db.session.add(video)
    db.session.commit()
    app.logger.info(f"Song video added: {song.id} {video_id} by {g.user.channel_id}")
    return jsonify({'success': True, 'video': video.to_dict()}), 201


def refresh_song_stats(song_id):
    """곡 하나의 부른 횟수/마지막으로 부른 날짜를 라이브 영상 기준으로 다시 계산"""
    song = db.session.get(SongDetail, song_id)
    if not song:
        return
    sung_count, last_sung = db.session.query(
        func.count(SongVideo.id), func.max(SongVideo.sung_date)
    ).filter(SongVideo.song_id == song_id).one()
    song.sung_count = sung_count
    song.last_sung_date = last_sung.strftime('%Y-%m-%d') if last_sung else None


def can_manage_video(video, user):
    return bool(user.is_admin) or video.added_by in (user.id, user.channel_id)


@app.route('/api/videos/<video_id>')
def api_get_video(video_id):
    video = db.session.get(SongVideo, video_id)
    if not video:
        return error_response('영상을 찾을 수 없습니다.', 404)
    return jsonify({'success': True, 'video': video.to_dict()})


@app.route('/api/videos/<video_id>', methods=['PUT'])
@login_required
def api_update_video(video_id):
    """라이브 영상 정보 수정 (등록자 또는 관리자)"""
    video = db.session.get(SongVideo, video_id)
    if not video:
        return error_response('영상을 찾을 수 없습니다.', 404)
    if not can_manage_video(video, g.user):
        return error_response('수정 권한이 없습니다.', 403)

    data = get_json_body()
    updates = {}
    if 'video_url' in data:
        video_url = (data.get('video_url') or '').strip()
        new_video_id = extract_video_id(video_url)
        if not is_youtube_url(video_url) or not new_video_id:
            return error_response('올바른 YouTube URL을 입력해주세요.')
        duplicate = SongVideo.query.filter(
            SongVideo.song_id == video.song_id,
            SongVideo.video_url == video_url,
            SongVideo.id != video.id
        ).first()
        if duplicate:
            return error_response('이미 등록된 영상입니다.', 409)
        updates.update(video_url=video_url, video_id=new_video_id, thumbnail_url=thumbnail_url(new_video_id))
    if 'sung_date' in data:
        try:
            updates['sung_date'] = parse_date(data.get('sung_date'))
        except (ValueError, TypeError):
            return error_response('부른 날짜를 YYYY-MM-DD 형식으로 입력해주세요.')
    if 'description' in data:
        updates['description'] = data.get('description') or ''
    try:
        updates['start_time'], updates['end_time'] = parse_clip_times(data, video.start_time or 0, video.end_time)
    except ValueError as e:
        return error_response(str(e))

    for field, value in updates.items():
        setattr(video, field, value)
    db.session.flush()
    refresh_song_stats(video.song_id)
    db.session.commit()
    invalidate_songbook()

    app.logger.info(f"Song video updated: {video.id} by {g.user.channel_id}")
    return jsonify({'success': True, 'video': video.to_dict()})


@app.route('/api/videos/<video_id>', methods=['DELETE'])
@login_required
def api_delete_video(video_id):
    video = db.session.get(SongVideo, video_id)
    if not video:
        return error_response('영상을 찾을 수 없습니다.', 404)
    if not can_manage_video(video, g.user):
        return error_response('삭제 권한이 없습니다.', 403)

    song_id = video.song_id
    db.session.delete(video)
    db.session.flush()
    refresh_song_stats(song_id)
    db.session.commit()
    invalidate_songbook()

    app.logger.info(f"Song video deleted: {video_id} by {g.user.channel_id}")
    return jsonify({'success': True, 'message': '영상이 삭제되었습니다.'})

# ============== 좋아요 API ==============

@app.route('/api/likes', methods=['POST'])
@login_required
def api_toggle_like():
    data = get_json_body()
    song_id = data.get('song_id')
    if not song_id:
        return error_response('song_id가 필요합니다.')
    if not get_active_song(song_id):
        return error_response('곡을 찾을 수 없습니다.', 404)

    like = Like.query.filter_by(user_id=g.user.id, song_id=song_id).first()
    if like:
        db.session.delete(like)
        liked = False
    else:
        db.session.add(Like(user_id=g.user.id, song_id=song_id))
        liked = True
    db.session.commit()

    like_count = Like.query.filter_by(song_id=song_id).count()
    return jsonify({'success': True, 'liked': liked, 'like_count': like_count})


@app.route('/api/likes-bulk', methods=['POST'])
def api_likes_bulk():
    """여러 곡의 좋아요 수와 내 좋아요 여부를 배치로 조회"""
    data = get_json_body()
    song_ids = data.get('song_ids') or []
    if not isinstance(song_ids, list):
        return error_response('song_ids는 목록이어야 합니다.')
    song_ids = list(dict.fromkeys(str(s) for s in song_ids if s))

    user = get_current_user()
    batch_size = app.config.get('LIKES_BATCH_SIZE', 100)
    likes = {song_id: {'count': 0, 'is_liked': False} for song_id in song_ids}
    batches = 0

    for start in range(0, len(song_ids), batch_size):
        batch = song_ids[start:start + batch_size]
        batches += 1
        counts = db.session.query(Like.song_id, func.count(Like.id)) \
            .filter(Like.song_id.in_(batch)).group_by(Like.song_id).all()
        for song_id, count in counts:
            likes[song_id]['count'] = count
        if user:
            liked_ids = db.session.query(Like.song_id) \
                .filter(Like.user_id == user.id, Like.song_id.in_(batch)).all()
            for (song_id,) in liked_ids:
                likes[song_id]['is_liked'] = True

    return jsonify({
        'success': True,
        'likes': likes,
        'total': sum(item['count'] for item in likes.values()),
        'requested': len(song_ids),
        'batches': batches
    })

# ============== 관리자 곡 관리 API ==============

@app.route('/api/admin/songs')
@admin_required
def api_admin_songs():
    """관리 화면용 곡 목록 (MR/가사 상태 포함)"""
    songs, sheet_error = get_songbook()
    items = []
    for song in songs:
        item = dict(song)
        item['record_status'] = song.get('status', 'active')
        item['status'] = classify_song_status(song)
        items.append(item)

    status_filter = request.args.get('status')
    stats = summarize_songs(items)
    if status_filter:
        items = [s for s in items if s['status'] == status_filter]

    result = {'success': True, 'songs': items, 'stats': stats}
    if sheet_error:
        result['sheet_error'] = sheet_error
    return jsonify(result)


@app.route('/api/admin/songs/refresh-sheet', methods=['POST'])
@admin_required
def api_refresh_sheet():
    cache.delete_memoized(get_sheet_songs)
    invalidate_songbook()
    app.logger.info(f"Sheet cache cleared by {g.user.channel_id}")
    return jsonify({'success': True, 'message': '시트 캐시를 초기화했습니다.'})


@app.route('/api/admin/recalculate-song-stats', methods=['POST'])
@admin_required
def api_recalculate_song_stats():
    """등록된 라이브 영상으로 부른 횟수/마지막으로 부른 날짜 재계산"""
    stats = dict(
        db.session.query(SongVideo.song_id, func.count(SongVideo.id)).group_by(SongVideo.song_id).all()
    )
    last_dates = dict(
        db.session.query(SongVideo.song_id, func.max(SongVideo.sung_date)).group_by(SongVideo.song_id).all()
    )

    updated = 0
    for song in SongDetail.query.filter(SongDetail.status != 'deleted').all():
        sung_count = stats.get(song.id, 0)
        last_sung = last_dates.get(song.id)
        last_sung_date = last_sung.strftime('%Y-%m-%d') if last_sung else None
        if song.sung_count != sung_count or song.last_sung_date != last_sung_date:
            song.sung_count = sung_count
            song.last_sung_date = last_sung_date
            updated += 1
    db.session.commit()
    invalidate_songbook()

    app.logger.info(f"Song stats recalculated: {updated} songs updated")
    return jsonify({'success': True, 'updated': updated})

# ============== 관리자 라이브 클립 관리 API ==============

CLIP_SORTS = {
    'recent': [SongVideo.created_at.desc()],
    'added_by': [SongVideo.added_by_name.asc(), SongVideo.created_at.desc()],
    'song_title': [SongVideo.title.asc(), SongVideo.artist.asc()],
    'verified': [SongVideo.is_verified.desc(), SongVideo.created_at.desc()],
    'sung_date': [SongVideo.sung_date.desc()],
}
CLIP_FILTERS = ('all', 'verified', 'unverified')
CLIP_ACTIONS = ('verify', 'unverify', 'update-times', 'update-description')


def clip_stats():
    """전체 클립 검증 현황과 등록자/곡별 상위 10개"""
    total = SongVideo.query.count()
    verified = SongVideo.query.filter(SongVideo.is_verified.is_(True)).count()

    contributors = db.session.query(SongVideo.added_by_name, func.count(SongVideo.id).label('count')) \
        .group_by(SongVideo.added_by_name).order_by(func.count(SongVideo.id).desc()).limit(10).all()
    songs = db.session.query(
        SongVideo.song_id, SongVideo.title, SongVideo.artist, func.count(SongVideo.id).label('count')
    ).group_by(SongVideo.song_id, SongVideo.title, SongVideo.artist) \
        .order_by(func.count(SongVideo.id).desc()).limit(10).all()

    return {
        'total': total,
        'verified': verified,
        'unverified': total - verified,
        'top_contributors': [{'name': name, 'count': count} for name, count in contributors],
        'top_songs': [
            {'song_id': song_id, 'title': title, 'artist': artist, 'count': count}
            for song_id, title, artist, count in songs
        ],
    }


def clip_dict(clip):
    data = clip.to_dict()
    song = clip.song
    data['song_detail'] = {
        'id': song.id,
        'title': song.title,
        'artist': song.artist,
        'language': song.language,
        'sung_count': song.sung_count or 0,
    } if song else None
    return data


@app.route('/api/admin/clips')
@admin_required
def api_admin_clips():
    """라이브 클립 목록 (검색/필터/정렬) + 통계"""
    page, limit = get_page_args()
    sort_by = request.args.get('sort_by', 'recent')
    filter_by = request.args.get('filter_by', 'all')
    if sort_by not in CLIP_SORTS:
        return error_response(f'지원하지 않는 정렬 방식입니다: {sort_by}')
    if filter_by not in CLIP_FILTERS:
        return error_response(f'지원하지 않는 필터입니다: {filter_by}')

    query = SongVideo.query
    if filter_by == 'verified':
        query = query.filter(SongVideo.is_verified.is_(True))
    elif filter_by == 'unverified':
        query = query.filter(or_(SongVideo.is_verified.is_(False), SongVideo.is_verified.is_(None)))

    search = request.args.get('search', '').strip()
    if search:
        like = f'%{search}%'
        query = query.filter(or_(
            SongVideo.title.ilike(like), SongVideo.artist.ilike(like),
            SongVideo.added_by_name.ilike(like), SongVideo.description.ilike(like)
        ))
    added_by = request.args.get('added_by', '').strip()
    if added_by:
        query = query.filter(SongVideo.added_by_name.ilike(f'%{added_by}%'))
    song_id = request.args.get('song_id')
    if song_id:
        query = query.filter(SongVideo.song_id == song_id)

    pagination = query.order_by(*CLIP_SORTS[sort_by]).paginate(page=page, per_page=limit, error_out=False)
    return jsonify({
        'success': True,
        'clips': [clip_dict(clip) for clip in pagination.items],
        'pagination': pagination_dict(pagination),
        'stats': clip_stats()
    })


@app.route('/api/admin/clips', methods=['PATCH'])
@admin_required
def api_admin_update_clip():
    data = get_json_body()
    clip_id = data.get('clip_id')
    action = data.get('action')
    if not clip_id or not action:
        return error_response('clip_id와 action이 필요합니다.')
    if action not in CLIP_ACTIONS:
        return error_response(f'지원하지 않는 작업입니다: {action}')

    clip = db.session.get(SongVideo, clip_id)
    if not clip:
        return error_response('클립을 찾을 수 없습니다.', 404)

    payload = data.get('data') or {}
    if action == 'verify':
        clip.is_verified = True
        clip.verified_by = g.user.id
        clip.verified_at = datetime.utcnow()
    elif action == 'unverify':
        clip.is_verified = False
        clip.verified_by = None
        clip.verified_at = None
    elif action == 'update-times':
        try:
            clip.start_time, clip.end_time = parse_clip_times(payload, clip.start_time or 0, clip.end_time)
        except ValueError as e:
            return error_response(str(e))
    elif action == 'update-description':
        clip.description = payload.get('description') or ''

    db.session.commit()
    app.logger.info(f"Clip {action}: {clip.id} by {g.user.channel_id}")
    return jsonify({'success': True, 'clip': clip_dict(clip)})


@app.route('/api/admin/clips', methods=['DELETE'])
@admin_required
def api_admin_delete_clip():
    clip_id = request.args.get('clip_id')
    if not clip_id:
        return error_response('clip_id가 필요합니다.')
    clip = db.session.get(SongVideo, clip_id)
    if not clip:
        return error_response('클립을 찾을 수 없습니다.', 404)

    song_id = clip.song_id
    db.session.delete(clip)
    db.session.flush()
    refresh_song_stats(song_id)
    db.session.commit()
    invalidate_songbook()

    app.logger.info(f"Clip deleted: {clip_id} by {g.user.channel_id}")
    return jsonify({'success': True, 'message': '클립이 삭제되었습니다.'})

# ============== 노래 추천 게시판 API ==============

SUGGESTION_FIELDS = (
    'language', 'genre', 'difficulty', 'lyrics', 'description', 'search_tags', 'mr_links',
    'selected_mr_index', 'original_track_url', 'lyrics_url', 'key_adjustment', 'duration', 'release_year'
)

SUGGESTION_SORTS = {
    'latest': [SongRequest.submitted_at.desc()],
    'recommended': [SongRequest.recommendation_count.desc(), SongRequest.submitted_at.desc()],
    'viewed': [SongRequest.view_count.desc(), SongRequest.submitted_at.desc()],
    'trending': [(SongRequest.recommendation_count * 3 + SongRequest.view_count).desc(),
                 SongRequest.submitted_at.desc()],
    'pending': [SongRequest.recommendation_count.desc(), SongRequest.submitted_at.desc()],
}


def clean_suggestion_value(field, value):
    if field == 'mr_links':
        return normalize_mr_links(value or [])
    if field == 'search_tags':
        if not isinstance(value or [], list):
            raise ValueError('search_tags 값은 목록이어야 합니다.')
        return [str(v).strip() for v in (value or []) if str(v).strip()]
    if field in ('selected_mr_index', 'key_adjustment'):
        if value in (None, ''):
            return 0 if field == 'selected_mr_index' else None
        value = int(value)
        if field == 'key_adjustment' and not -12 <= value <= 12:
            raise ValueError('키 조절은 -12부터 +12 사이의 숫자로 입력해주세요.')
        if field == 'selected_mr_index' and value < 0:
            raise ValueError('selected_mr_index 값은 0 이상이어야 합니다.')
        return value
    if isinstance(value, str):
        return value.strip()
    return value


@app.route('/api/suggestions')
def api_suggestions():
    """추천곡 목록 (정렬/검색/필터/페이지네이션)"""
    page, limit = get_page_args()
    sort = request.args.get('sort', 'latest')
    search = request.args.get('search', '').strip()
    genre = request.args.get('genre', '').strip()
    status = request.args.get('status', '').strip()
    promoted = parse_bool(request.args.get('promoted'))

    if sort not in SUGGESTION_SORTS:
        return error_response(f'알 수 없는 정렬 방식입니다: {sort}')

    query = SongRequest.query
    if search:
        like = f'%{search}%'
        query = query.filter(or_(
            SongRequest.title.ilike(like),
            SongRequest.artist.ilike(like),
            SongRequest.description.ilike(like),
            cast(SongRequest.search_tags, String).ilike(like)
        ))
    if genre:
        query = query.filter(SongRequest.genre == genre)
    if sort == 'pending':
        query = query.filter(SongRequest.status == 'pending_approval')
    elif status:
        query = query.filter(SongRequest.status == status)
    if promoted is not None:
        query = query.filter(SongRequest.promoted_to_songbook == promoted)

    pagination = query.order_by(*SUGGESTION_SORTS[sort]).paginate(page=page, per_page=limit, error_out=False)
    user = get_current_user()
    user_id = user.id if user else None

    return jsonify({
        'success': True,
        'suggestions': [s.to_dict(user_id) for s in pagination.items],
        'pagination': pagination_dict(pagination)
    })


@app.route('/api/suggestions', methods=['POST'])
@limiter.limit(app.config.get('RATELIMIT_SUGGESTION', '10 per minute'))
@login_required
def api_create_suggestion():
    data = get_json_body()
    title = (data.get('title') or '').strip()
    artist = (data.get('artist') or '').strip()
    if not title or not artist:
        return error_response('제목과 아티스트는 필수입니다.')

    existing = SongRequest.query.filter_by(title=title, artist=artist).first()
    if existing:
        return error_response('이미 추천된 곡입니다.', existing_id=existing.id)

    user = g.user
    suggestion = SongRequest(
        title=title,
        artist=artist,
        original_submitter=user.id,
        original_submitter_name=user.name,
        status='active'
    )
    try:
        for field in SUGGESTION_FIELDS:
            if field in data:
                setattr(suggestion, field, clean_suggestion_value(field, data[field]))
    except (ValueError, TypeError) as e:
        return error_response(str(e))

    suggestion.add_history(user.id, user.name, '곡 최초 등록', ['title', 'artist'])
    db.session.add(suggestion)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return error_response('이미 추천된 곡입니다.')

    app.logger.info(f"Suggestion created: {title} - {artist} by {user.channel_id}")
    return jsonify({'success': True, 'suggestion': suggestion.to_dict(user.id)}), 201


@app.route('/api/suggestions/stats')
def api_suggestion_stats():
    now = datetime.utcnow()
    week_ago = now - timedelta(days=7)
    month_ago = now - timedelta(days=30)

    total = SongRequest.query.count()
    weekly_new = SongRequest.query.filter(SongRequest.submitted_at >= week_ago).count()
    total_recommendations = db.session.query(
        func.coalesce(func.sum(SongRequest.recommendation_count), 0)).scalar()
    pending_promotions = SongRequest.query.filter_by(status='pending_approval').count()
    promoted = SongRequest.query.filter_by(promoted_to_songbook=True).count()
    active_contributors = db.session.query(
        func.count(func.distinct(SongRequest.original_submitter))
    ).filter(SongRequest.submitted_at >= month_ago).scalar()

    return jsonify({
        'success': True,
        'stats': {
            'total_suggestions': total,
            'weekly_new': weekly_new,
            'total_recommendations': int(total_recommendations or 0),
            'pending_promotions': pending_promotions,
            'promoted': promoted,
            'active_contributors': active_contributors or 0,
        }
    })


@app.route('/api/suggestions/<suggestion_id>')
def api_get_suggestion(suggestion_id):
    """추천곡 상세 (조회수 증가)"""
    suggestion = db.session.get(SongRequest, suggestion_id)
    if not suggestion:
        return error_response('추천곡을 찾을 수 없습니다.', 404)

    suggestion.view_count = (suggestion.view_count or 0) + 1
    db.session.commit()

    user = get_current_user()
    return jsonify({'success': True, 'suggestion': suggestion.to_dict(user.id if user else None)})


@app.route('/api/suggestions/<suggestion_id>', methods=['PUT'])
@login_required
def api_update_suggestion(suggestion_id):
    """추천곡 수정 (변경 이력 기록)"""
    suggestion = db.session.get(SongRequest, suggestion_id)
    if not suggestion:
        return error_response('추천곡을 찾을 수 없습니다.', 404)

    data = get_json_body()
    user = g.user
    editable = ('title', 'artist') + SUGGESTION_FIELDS
    if user.is_admin:
        editable += ('status',)

    changed = []
    try:
        for field in editable:
            if field not in data:
                continue
            value = clean_suggestion_value(field, data[field])
            if field in ('title', 'artist') and not value:
                raise ValueError('제목과 아티스트는 비워둘 수 없습니다.')
            if getattr(suggestion, field) != value:
                setattr(suggestion, field, value)
                changed.append(field)
    except (ValueError, TypeError) as e:
        db.session.rollback()
        return error_response(str(e))

    if not changed:
        return error_response('변경된 내용이 없습니다.')

    suggestion.add_history(user.id, user.name, f"{', '.join(changed)} 수정", changed)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return error_response('같은 제목과 아티스트의 추천곡이 이미 있습니다.')

    app.logger.info(f"Suggestion updated: {suggestion.id} ({', '.join(changed)}) by {user.channel_id}")
    return jsonify({'success': True, 'suggestion': suggestion.to_dict(user.id)})


@app.route('/api/suggestions/<suggestion_id>', methods=['DELETE'])
@admin_required
def api_delete_suggestion(suggestion_id):
    suggestion = db.session.get(SongRequest, suggestion_id)
    if not suggestion:
        return error_response('추천곡을 찾을 수 없습니다.', 404)

    db.session.delete(suggestion)
    db.session.commit()
    app.logger.info(f"Suggestion deleted: {suggestion_id} by {g.user.channel_id}")
    return jsonify({'success': True, 'message': '추천곡이 삭제되었습니다.'})


@app.route('/api/suggestions/<suggestion_id>/recommend', methods=['POST'])
@login_required
def api_recommend_suggestion(suggestion_id):
    """추천 토글"""
    suggestion = db.session.get(SongRequest, suggestion_id)
    if not suggestion:
        return error_response('추천곡을 찾을 수 없습니다.', 404)

    recommended_by = list(suggestion.recommended_by or [])
    if g.user.id in recommended_by:
        recommended_by.remove(g.user.id)
        suggestion.recommendation_count = max(0, (suggestion.recommendation_count or 0) - 1)
        recommended = False
    else:
        recommended_by.append(g.user.id)
        suggestion.recommendation_count = (suggestion.recommendation_count or 0) + 1
        recommended = True
    suggestion.recommended_by = recommended_by
    db.session.commit()

    return jsonify({
        'success': True,
        'recommended': recommended,
        'recommendation_count': suggestion.recommendation_count
    })


@app.route('/api/suggestions/<suggestion_id>/promote', methods=['POST'])
@admin_required
def api_promote_suggestion(suggestion_id):
    """추천곡을 노래책으로 승격"""
    suggestion = db.session.get(SongRequest, suggestion_id)
    if not suggestion:
        return error_response('추천곡을 찾을 수 없습니다.', 404)
    if suggestion.promoted_to_songbook:
        return error_response('이미 노래책에 추가된 곡입니다.')

    # 노래책 곡 제목은 unique
    if SongDetail.query.filter_by(title=suggestion.title).first():
        return error_response('노래책에 같은 곡이 이미 있습니다.')

    data = get_json_body()
    try:
        song = SongDetail(
            title=suggestion.title,
            artist=suggestion.artist,
            title_alias=data.get('title_alias') or suggestion.title,
            artist_alias=data.get('artist_alias') or suggestion.artist,
            language=suggestion.language or None,
            lyrics=suggestion.lyrics,
            search_tags=list(suggestion.search_tags or []),
            key_adjustment=suggestion.key_adjustment,
            mr_links=list(suggestion.mr_links or []),
            selected_mr_index=suggestion.selected_mr_index or 0,
            personal_notes=suggestion.description,
            status='active'
        )
        song.check_mr_selection()
    except (ValueError, TypeError) as e:
        return error_response(str(e))
    db.session.add(song)
    db.session.flush()

    user = g.user
    suggestion.status = 'approved'
    suggestion.promoted_to_songbook = True
    suggestion.promoted_at = datetime.utcnow()
    suggestion.promoted_by = user.id
    suggestion.songbook_id = song.id
    suggestion.add_history(user.id, user.name, '노래책으로 승격', ['status', 'promoted_to_songbook'])
    db.session.commit()
    invalidate_songbook()

    app.logger.info(f"Suggestion promoted: {suggestion.id} -> {song.id} by {user.channel_id}")
    return jsonify({'success': True, 'song': song.to_dict(), 'suggestion': suggestion.to_dict(user.id)})

# ============== 플레이리스트 API ==============

def get_owned_playlist(playlist_id):
    playlist = db.session.get(Playlist, playlist_id)
    if not playlist or playlist.user_id != g.user.id:
        return None
    return playlist


@app.route('/api/playlists')
@login_required
def api_playlists():
    playlists = Playlist.query.filter_by(user_id=g.user.id).order_by(Playlist.created_at.desc()).all()
    return jsonify({'success': True, 'playlists': [p.to_dict() for p in playlists]})


@app.route('/api/playlists', methods=['POST'])
@login_required
def api_create_playlist():
    data = get_json_body()
    name = (data.get('name') or '').strip() or '새 플레이리스트'
    tags = data.get('tags') or []
    if not isinstance(tags, list):
        return error_response('tags는 목록이어야 합니다.')

    playlist = Playlist(
        user_id=g.user.id,
        name=name[:100],
        description=(data.get('description') or '')[:500],
        cover_image=data.get('cover_image'),
        tags=[str(t).strip() for t in tags if str(t).strip()]
    )
    db.session.add(playlist)
    db.session.commit()
    return jsonify({'success': True, 'playlist': playlist.to_dict()}), 201


@app.route('/api/playlists/<playlist_id>')
@login_required
def api_get_playlist(playlist_id):
    playlist = get_owned_playlist(playlist_id)
    if not playlist:
        return error_response('플레이리스트를 찾을 수 없습니다.', 404)
    return jsonify({'success': True, 'playlist': playlist.to_dict(include_songs=True)})


@app.route('/api/playlists/<playlist_id>', methods=['PUT'])
@login_required
def api_update_playlist(playlist_id):
    playlist = get_owned_playlist(playlist_id)
    if not playlist:
        return error_response('플레이리스트를 찾을 수 없습니다.', 404)

    data = get_json_body()
    if 'name' in data:
        name = (data.get('name') or '').strip()
        if not name:
            return error_response('플레이리스트 이름을 입력해주세요.')
        playlist.name = name[:100]
    if 'description' in data:
        playlist.description = (data.get('description') or '')[:500]
    if 'cover_image' in data:
        playlist.cover_image = data.get('cover_image')
    if 'tags' in data:
        if not isinstance(data['tags'] or [], list):
            return error_response('tags는 목록이어야 합니다.')
        playlist.tags = [str(t).strip() for t in (data['tags'] or []) if str(t).strip()]
    db.session.commit()
    return jsonify({'success': True, 'playlist': playlist.to_dict()})


@app.route('/api/playlists/<playlist_id>', methods=['DELETE'])
@login_required
def api_delete_playlist(playlist_id):
    playlist = get_owned_playlist(playlist_id)
    if not playlist:
        return error_response('플레이리스트를 찾을 수 없습니다.', 404)
    db.session.delete(playlist)
    db.session.commit()
    return jsonify({'success': True})


@app.route('/api/playlists/<playlist_id>/songs', methods=['POST'])
@login_required
def api_add_playlist_song(playlist_id):
    playlist = get_owned_playlist(playlist_id)
    if not playlist:
        return error_response('플레이리스트를 찾을 수 없습니다.', 404)

    song_id = get_json_body().get('song_id')
    if not song_id:
        return error_response('song_id가 필요합니다.')
    if not get_active_song(song_id):
        return error_response('곡을 찾을 수 없습니다.', 404)
    if playlist.songs.filter_by(song_id=song_id).first():
        return error_response('이미 플레이리스트에 있는 곡입니다.', 409)

    max_order = db.session.query(func.max(PlaylistSong.order)) \
        .filter(PlaylistSong.playlist_id == playlist.id).scalar()
    db.session.add(PlaylistSong(
        playlist_id=playlist.id,
        song_id=song_id,
        order=(max_order + 1) if max_order is not None else 0
    ))
    playlist.updated_at = datetime.utcnow()
    db.session.commit()
    return jsonify({'success': True, 'playlist': playlist.to_dict(include_songs=True)}), 201


@app.route('/api/playlists/<playlist_id>/songs', methods=['DELETE'])
@login_required
def api_remove_playlist_song(playlist_id):
    playlist = get_owned_playlist(playlist_id)
    if not playlist:
        return error_response('플레이리스트를 찾을 수 없습니다.', 404)

    song_id = get_json_body().get('song_id') or request.args.get('song_id')
    if not song_id:
        return error_response('song_id가 필요합니다.')
    entry = playlist.songs.filter_by(song_id=song_id).first()
    if not entry:
        return error_response('플레이리스트에 없는 곡입니다.', 404)

    db.session.delete(entry)
    playlist.updated_at = datetime.utcnow()
    db.session.commit()
    return jsonify({'success': True, 'playlist': playlist.to_dict(include_songs=True)})

# ============== 사용자 API ==============

USER_THEMES = ('light', 'dark', 'system')
PLAYLIST_VIEWS = ('grid', 'list')


@app.route('/api/user/profile')
@login_required
def api_user_profile():
    user = g.user
    data = user.to_dict()
    data['stats'] = {
        'likes': Like.query.filter_by(user_id=user.id).count(),
        'playlists': Playlist.query.filter_by(user_id=user.id).count(),
        'suggestions': SongRequest.query.filter_by(original_submitter=user.id).count(),
    }
    return jsonify({'success': True, 'user': data})


@app.route('/api/user/profile', methods=['PUT'])
@login_required
def api_update_user_profile():
    data = get_json_body()
    preferences = data.get('preferences') or {}
    user = g.user

    theme = preferences.get('theme', data.get('theme'))
    view = preferences.get('default_playlist_view', data.get('default_playlist_view'))
    if theme is not None:
        if theme not in USER_THEMES:
            return error_response(f'지원하지 않는 테마입니다: {theme}')
        user.theme = theme
    if view is not None:
        if view not in PLAYLIST_VIEWS:
            return error_response(f'지원하지 않는 보기 방식입니다: {view}')
        user.default_playlist_view = view
    if 'display_name' in data:
        display_name = (data.get('display_name') or '').strip()
        user.display_name = display_name[:100] or None

    db.session.commit()
    return jsonify({'success': True, 'user': user.to_dict()})


@app.route('/api/user/likes')
@login_required
def api_user_likes():
    """내가 좋아요한 곡 목록 (최근 순)"""
    page, limit = get_page_args()
    pagination = Like.query.filter_by(user_id=g.user.id) \
        .order_by(Like.created_at.desc(), Like.id.desc()).paginate(page=page, per_page=limit, error_out=False)
    return jsonify({
        'success': True,
        'likes': [like.to_dict() for like in pagination.items],
        'pagination': pagination_dict(pagination)
    })


@app.route('/api/admin/users')
@admin_required
def api_admin_users():
    page, limit = get_page_args()
    search = request.args.get('search', '').strip()

    query = User.query
    if search:
        like = f'%{search}%'
        query = query.filter(or_(User.channel_name.ilike(like), User.display_name.ilike(like)))
    pagination = query.order_by(User.last_login_at.desc()).paginate(page=page, per_page=limit, error_out=False)

    return jsonify({
        'success': True,
        'users': [u.to_dict() for u in pagination.items],
        'pagination': pagination_dict(pagination)
    })


@app.route('/api/admin/users/<user_id>', methods=['PATCH'])
@admin_required
def api_admin_update_user(user_id):
    user = db.session.get(User, user_id)
    if not user:
        return error_response('사용자를 찾을 수 없습니다.', 404)

    data = get_json_body()
    if 'is_admin' not in data:
        return error_response('is_admin 값이 필요합니다.')
    if user.id == g.user.id:
        return error_response('자신의 관리자 권한은 변경할 수 없습니다.')

    user.is_admin = bool(parse_bool(data['is_admin']))
    db.session.commit()
    app.logger.info(f"User admin flag changed: {user.channel_id} -> {user.is_admin} by {g.user.channel_id}")
    return jsonify({'success': True, 'user': user.to_dict()})

# ============== YouTube 댓글 수집 API ==============

def get_archive_channel():
    """수집 대상 채널 레코드 (없으면 생성)"""
    channel_id = app.config.get('ARCHIVE_CHANNEL_ID')
    channel = YouTubeChannel.query.filter_by(channel_id=channel_id).first()
    if not channel:
        channel = YouTubeChannel(
            channel_id=channel_id,
            channel_name=app.config.get('ARCHIVE_CHANNEL_NAME'),
            channel_url=app.config.get('ARCHIVE_CHANNEL_URL')
        )
        db.session.add(channel)
    return channel


def update_video_comment_counts(video):
    video.total_comments = YouTubeComment.query.filter_by(video_id=video.video_id).count()
    video.timeline_comments = YouTubeComment.query.filter_by(video_id=video.video_id, is_timeline=True).count()


def sync_video_comments(video):
    """
    영상 댓글을 가져와 저장하고 타임라인 댓글을 표시

    Returns:
        (새 댓글 수, 새 타임라인 댓글 수)
    """
    comments = get_video_comments(video.video_id, app.config.get('YOUTUBE_API_KEY'))
    new_comments = 0
    new_timeline = 0

    for item in comments:
        is_timeline = is_timeline_comment(item['text_content'])
        comment = YouTubeComment.query.filter_by(comment_id=item['comment_id']).first()
        if comment:
            comment.text_content = item['text_content']
            comment.like_count = item['like_count']
            # 수동으로 지정한 타임라인 여부는 유지
            if not comment.manually_marked:
                comment.is_timeline = is_timeline
                comment.extracted_timestamps = extract_timestamps(item['text_content'])
            continue

        db.session.add(YouTubeComment(
            comment_id=item['comment_id'],
            video_id=video.video_id,
            author_name=item['author_name'],
            text_content=item['text_content'],
            published_at=item['published_at'],
            like_count=item['like_count'],
            is_timeline=is_timeline,
            extracted_timestamps=extract_timestamps(item['text_content'])
        ))
        new_comments += 1
        if is_timeline:
            new_timeline += 1

    db.session.flush()
    update_video_comment_counts(video)
    video.last_comment_sync = datetime.utcnow()
    return new_comments, new_timeline


def update_channel_totals(channel):
    channel.total_videos = YouTubeVideo.query.filter_by(channel_id=channel.channel_id).count()
    video_ids = select(YouTubeVideo.video_id).where(YouTubeVideo.channel_id == channel.channel_id)
    channel.total_comments = YouTubeComment.query.filter(YouTubeComment.video_id.in_(video_ids)).count()
    channel.timeline_comments = YouTubeComment.query.filter(
        YouTubeComment.video_id.in_(video_ids), YouTubeComment.is_timeline.is_(True)).count()


def handle_sync_channel(data):
    """채널 영상 목록과 댓글 동기화"""
    max_videos = data.get('max_videos')
    try:
        max_videos = int(max_videos) if max_videos not in (None, '') else 50
    except (ValueError, TypeError):
        return error_response('max_videos는 숫자여야 합니다.')
    if max_videos < 1:
        return error_response('max_videos는 1 이상이어야 합니다.')
    channel = get_archive_channel()
    full_sync = bool(parse_bool(data.get('full_sync')))
    published_after = None if full_sync else channel.last_sync_date

    try:
        videos = get_channel_videos(channel.channel_id, max_videos=max_videos)
    except YouTubeAPIError as e:
        app.logger.error(f"Channel listing failed: {e}")
        return error_response(str(e), 502)

    if published_after:
        videos = [v for v in videos if not v['published_at'] or v['published_at'] > published_after]

    stats = {'processed_videos': 0, 'new_videos': 0, 'new_comments': 0, 'new_timeline_comments': 0, 'errors': []}
    delay = app.config.get('YOUTUBE_SYNC_DELAY', 1.0)

    for index, item in enumerate(videos):
        video = YouTubeVideo.query.filter_by(video_id=item['video_id']).first()
        if not video:
            video = YouTubeVideo(video_id=item['video_id'], channel_id=channel.channel_id)
            db.session.add(video)
            stats['new_videos'] += 1
        video.title = item['title'] or video.title
        video.published_at = item['published_at'] or video.published_at
        video.thumbnail_url = item['thumbnail_url']

        try:
            new_comments, new_timeline = sync_video_comments(video)
            db.session.commit()
        except (YouTubeAPIError, requests.RequestException) as e:
            db.session.rollback()
            app.logger.warning(f"Comment sync failed for {item['video_id']}: {e}")
            stats['errors'].append({'video_id': item['video_id'], 'error': str(e)})
            continue

        stats['processed_videos'] += 1
        stats['new_comments'] += new_comments
        stats['new_timeline_comments'] += new_timeline
        app.logger.debug(f"Synced video {index + 1}/{len(videos)}: {item['video_id']}")

        if delay and index < len(videos) - 1:
            time.sleep(delay)

    channel = get_archive_channel()
    update_channel_totals(channel)
    channel.last_sync_date = datetime.utcnow()
    db.session.commit()

    app.logger.info(f"Channel sync done: {stats['processed_videos']} videos, {stats['new_comments']} new comments")
    return jsonify({'success': True, 'stats': stats, 'channel': channel.to_dict()})


def handle_sync_video(data):
    video_id = data.get('video_id')
    if not video_id:
        return error_response('video_id가 필요합니다.')
    video = YouTubeVideo.query.filter_by(video_id=video_id).first()
    if not video:
        return error_response('영상을 찾을 수 없습니다.', 404)

    try:
        new_comments, new_timeline = sync_video_comments(video)
        db.session.commit()
    except (YouTubeAPIError, requests.RequestException) as e:
        db.session.rollback()
        app.logger.warning(f"Comment sync failed for {video_id}: {e}")
        return error_response(str(e), 502)

    return jsonify({
        'success': True,
        'video': video.to_dict(),
        'new_comments': new_comments,
        'new_timeline_comments': new_timeline
    })


def handle_update_comment(data):
    comment_id = data.get('comment_id')
    if not comment_id:
        return error_response('comment_id가 필요합니다.')
    comment = YouTubeComment.query.filter_by(comment_id=comment_id).first()
    if not comment:
        return error_response('댓글을 찾을 수 없습니다.', 404)

    if 'is_timeline' in data:
        comment.is_timeline = bool(parse_bool(data['is_timeline']))
        comment.manually_marked = True
    if 'is_processed' in data:
        comment.is_processed = bool(parse_bool(data['is_processed']))
        comment.processed_by = g.user.channel_name if comment.is_processed else None
        comment.processed_at = datetime.utcnow() if comment.is_processed else None

    video = YouTubeVideo.query.filter_by(video_id=comment.video_id).first()
    if video:
        db.session.flush()
        update_video_comment_counts(video)
    db.session.commit()
    return jsonify({'success': True, 'comment': comment.to_dict()})


@app.route('/api/youtube-comments')
@admin_required
def api_youtube_comments():
    action = get_action()

    if action == 'channel-stats':
        page, limit = get_page_args()
        search = request.args.get('search', '').strip()
        channel = YouTubeChannel.query.filter_by(channel_id=app.config.get('ARCHIVE_CHANNEL_ID')).first()

        query = YouTubeVideo.query
        if channel:
            query = query.filter_by(channel_id=channel.channel_id)
        if search:
            query = query.filter(YouTubeVideo.title.ilike(f'%{search}%'))
        pagination = query.order_by(YouTubeVideo.published_at.desc()).paginate(
            page=page, per_page=limit, error_out=False)

        return jsonify({
            'success': True,
            'channel': channel.to_dict() if channel else None,
            'videos': [v.to_dict() for v in pagination.items],
            'pagination': pagination_dict(pagination)
        })

    if action == 'video-details':
        video_id = request.args.get('video_id')
        if not video_id:
            return error_response('video_id가 필요합니다.')
        video = YouTubeVideo.query.filter_by(video_id=video_id).first()
        if not video:
            return error_response('영상을 찾을 수 없습니다.', 404)

        query = YouTubeComment.query.filter_by(video_id=video_id)
        if parse_bool(request.args.get('timeline_only')):
            query = query.filter_by(is_timeline=True)
        comments = query.order_by(YouTubeComment.published_at.desc()).all()
        return jsonify({'success': True, 'video': video.to_dict(), 'comments': [c.to_dict() for c in comments]})

    return error_response('Invalid action')


@app.route('/api/youtube-comments', methods=['POST'])
@admin_required
@limiter.limit(app.config.get('RATELIMIT_SYNC', '2 per minute'),
               exempt_when=lambda: (request.get_json(silent=True) or {}).get('action') == 'update-comment')
def api_youtube_comments_action():
    data = get_json_body()
    action = get_action(data)

    if action == 'sync-channel':
        return handle_sync_channel(data)
    if action == 'sync-video':
        return handle_sync_video(data)
    if action == 'update-comment':
        return handle_update_comment(data)
    return error_response('Invalid action')

# ============== 타임라인 파서 API ==============

def parse_timeline_comments(video_id=None):
    """타임라인 댓글을 라이브 클립으로 변환해 저장"""
    query = YouTubeComment.query.filter_by(is_timeline=True)
    if video_id:
        query = query.filter_by(video_id=video_id)
    comments = query.all()

    songs = song_match_candidates()
    videos = {}
    created = []
    stats = {
        'total_videos': 0,
        'total_timeline_comments': len(comments),
        'parsed_items': 0,
        'relevant_items': 0,
        'matched_songs': 0,
        'unique_songs': 0,
        'duplicates_skipped': 0,
    }

    for comment in comments:
        if '<a ' not in (comment.text_content or ''):
            continue
        if comment.video_id not in videos:
            videos[comment.video_id] = YouTubeVideo.query.filter_by(video_id=comment.video_id).first()
        video = videos[comment.video_id]
        video_title = video.title if video else ''

        for entry in parse_timeline_comment(comment.text_content, video_title):
            start = entry['start_time_seconds']
            if LiveClip.query.filter_by(video_id=comment.video_id, start_time_seconds=start).first():
                stats['duplicates_skipped'] += 1
                continue

            matched_song = None
            if entry['is_relevant']:
                matched_song = get_best_song_match(entry['artist'], entry['song_title'], songs)

            clip = LiveClip(
                id=f"{comment.comment_id}_{start}",
                video_id=comment.video_id,
                video_title=video_title or comment.video_id,
                uploaded_date=entry['uploaded_date'],
                original_date_string=entry['original_date_string'],
                artist=entry['artist'],
                song_title=entry['song_title'],
                video_url=entry['video_url'] or f"https://www.youtube.com/watch?v={comment.video_id}",
                start_time_seconds=start,
                end_time_seconds=entry['end_time_seconds'],
                duration=entry['duration'],
                is_relevant=entry['is_relevant'],
                matched_song=matched_song,
                original_comment=comment.text_content
            )
            db.session.add(clip)
            db.session.flush()
            created.append(clip)

        comment.is_processed = True
        comment.processed_by = 'timeline-parser'
        comment.processed_at = datetime.utcnow()

    db.session.commit()

    relevant = [clip for clip in created if clip.is_relevant]
    stats['total_videos'] = len(videos)
    stats['parsed_items'] = len(created)
    stats['relevant_items'] = len(relevant)
    stats['matched_songs'] = len([clip for clip in created if clip.matched_song])
    stats['unique_songs'] = len({(clip.artist.lower(), clip.song_title.lower()) for clip in relevant})
    return stats


def get_live_clip(data):
    item_id = data.get('item_id')
    if not item_id:
        return None, error_response('item_id가 필요합니다.')
    clip = db.session.get(LiveClip, item_id)
    if not clip:
        return None, error_response('항목을 찾을 수 없습니다.', 404)
    return clip, None


def handle_update_live_clip(clip, data):
    """클립의 아티스트/곡명/구간 수정"""
    texts = {}
    for field in ('artist', 'song_title'):
        if field in data:
            texts[field] = (data.get(field) or '').strip()
            if not texts[field]:
                return error_response(f'{field} 값은 비워둘 수 없습니다.')

    try:
        start = int(data['start_time_seconds']) if 'start_time_seconds' in data else clip.start_time_seconds
        end = clip.end_time_seconds
        if 'end_time_seconds' in data:
            end = int(data['end_time_seconds']) if data['end_time_seconds'] not in (None, '') else None
    except (ValueError, TypeError):
        return error_response('시간 값은 숫자여야 합니다.')
    if start < 0 or (end is not None and end <= start):
        return error_response('종료 시간은 시작 시간보다 커야 합니다.')

    for field, value in texts.items():
        setattr(clip, field, value)
    clip.start_time_seconds = start
    clip.end_time_seconds = end
    clip.duration = end - start if end is not None else None
    for field in ('is_relevant', 'is_excluded'):
        if field in data:
            setattr(clip, field, bool(parse_bool(data[field])))
    db.session.commit()
    return jsonify({'success': True, 'item': clip.to_dict()})


@app.route('/api/timeline-parser')
@admin_required
def api_timeline_parser():
    action = get_action()
    if action != 'get-parsed-items':
        return error_response('Invalid action')

    page, limit = get_page_args(default_limit=50, max_limit=500)
    query = LiveClip.query
    if request.args.get('video_id'):
        query = query.filter_by(video_id=request.args['video_id'])
    for field in ('is_relevant', 'is_excluded'):
        value = parse_bool(request.args.get(field))
        if value is not None:
            query = query.filter(getattr(LiveClip, field).is_(value))
    matched = parse_bool(request.args.get('matched'))
    if matched is True:
        query = query.filter(LiveClip.matched_song.isnot(None))
    elif matched is False:
        query = query.filter(LiveClip.matched_song.is_(None))

    pagination = query.order_by(LiveClip.uploaded_date.desc(), LiveClip.video_id,
                                LiveClip.start_time_seconds).paginate(page=page, per_page=limit, error_out=False)
    return jsonify({
        'success': True,
        'items': [clip.to_dict() for clip in pagination.items],
        'pagination': pagination_dict(pagination)
    })


@app.route('/api/timeline-parser', methods=['POST'])
@admin_required
def api_timeline_parser_action():
    data = get_json_body()
    action = get_action(data)

    if action == 'parse-timeline-comments':
        stats = parse_timeline_comments(data.get('video_id'))
        app.logger.info(f"Timeline comments parsed: {stats}")
        return jsonify({'success': True, 'stats': stats})

    if action == 'find-song-matches' and not data.get('item_id'):
        # 클립 없이 아티스트/곡명으로 직접 검색
        if not data.get('song_title'):
            return error_response('item_id 또는 song_title이 필요합니다.')
        matches = find_song_matches(data.get('artist') or '', data['song_title'], song_match_candidates())
        return jsonify({'success': True, 'matches': matches})

    if action not in ('update-item-relevance', 'update-item-exclusion', 'find-song-matches',
                      'assign-song-match', 'remove-song-match', 'update-live-clip'):
        return error_response('Invalid action')

    clip, error = get_live_clip(data)
    if error:
        return error

    if action == 'update-item-relevance':
        clip.is_relevant = bool(parse_bool(data.get('is_relevant')))
        db.session.commit()
        return jsonify({'success': True, 'item': clip.to_dict()})

    if action == 'update-item-exclusion':
        clip.is_excluded = bool(parse_bool(data.get('is_excluded')))
        db.session.commit()
        return jsonify({'success': True, 'item': clip.to_dict()})

    if action == 'find-song-matches':
        matches = find_song_matches(clip.artist, clip.song_title, song_match_candidates())
        return jsonify({'success': True, 'item': clip.to_dict(), 'matches': matches})

    if action == 'assign-song-match':
        song_id = data.get('song_id')
        if not song_id:
            return error_response('song_id가 필요합니다.')
        song = get_active_song(song_id)
        if not song:
            return error_response('곡을 찾을 수 없습니다.', 404)
        clip.matched_song = {
            'song_id': song.id,
            'title': song.title,
            'artist': song.artist,
            'confidence': float(data.get('confidence') or 1.0)
        }
        db.session.commit()
        return jsonify({'success': True, 'item': clip.to_dict()})

    if action == 'remove-song-match':
        clip.matched_song = None
        db.session.commit()
        return jsonify({'success': True, 'item': clip.to_dict()})

    return handle_update_live_clip(clip, data)

# ============== 백업 API ==============

@app.route('/api/admin/backups')
@admin_required
def api_backups():
    action = get_action()

    if action == 'list-backups':
        limit = min(max(request.args.get('limit', 20, type=int), 1), 100)
        backups = backup_service.list_backups(limit)
        return jsonify({'success': True, 'backups': [b.to_dict() for b in backups]})

    if action == 'list-collections':
        return jsonify({'success': True, 'collections': backup_service.list_data_tables()})

    return error_response('Invalid action')


@app.route('/api/admin/backups', methods=['POST'])
@admin_required
def api_backups_action():
    data = get_json_body()
    action = get_action(data)

    if action == 'backup':
        try:
            backup = backup_service.create_backup(data.get('name') or None)
        except ValueError as e:
            return error_response(str(e))
        app.logger.info(f"Backup created by {g.user.channel_id}: {backup.name}")
        return jsonify({'success': True, 'backup': backup.to_dict()}), 201

    if action == 'restore':
        name = data.get('name')
        if not name:
            return error_response('백업 이름이 필요합니다.')
        try:
            info, results = backup_service.restore_backup(name, app.config.get('BACKUP_CHUNK_SIZE', 500))
        except backup_service.BackupNotFound:
            return error_response('백업을 찾을 수 없습니다.', 404)
        invalidate_songbook()
        app.logger.info(f"Backup restored by {g.user.channel_id}: {name}")
        return jsonify({
            'success': all(r['success'] for r in results),
            'backup': info,
            'results': results
        })

    return error_response('Invalid action')


@app.route('/api/admin/backups', methods=['DELETE'])
@admin_required
def api_backups_delete():
    data = get_json_body()
    action = get_action(data)

    if action == 'delete-backup':
        name = data.get('name') or request.args.get('name')
        if not name:
            return error_response('백업 이름이 필요합니다.')
        try:
            backup_service.delete_backup(name)
        except backup_service.BackupNotFound:
            return error_response('백업을 찾을 수 없습니다.', 404)
        return jsonify({'success': True, 'message': f'{name} 백업을 삭제했습니다.'})

    if action == 'clear-all-backups':
        deleted = backup_service.clear_all_backups()
        app.logger.warning(f"All backups cleared by {g.user.channel_id}: {deleted}")
        return jsonify({'success': True, 'deleted_count': deleted})

    return error_response('Invalid action')

# ============== 상태 확인 ==============

@app.route('/api/health')
def api_health():
    try:
        db.session.execute(select(func.count()).select_from(SongDetail))
        database = 'ok'
    except SQLAlchemyError as e:
        app.logger.error(f"Database health check failed: {e}")
        database = 'error'
    return jsonify({'success': database == 'ok', 'database': database}), 200 if database == 'ok' else 503


if __name__ == '__main__':
    app.run(debug=app.config.get('DEBUG', False), port=int(os.environ.get('PORT', 5000)))
