"""
Songbook 데이터베이스 모델
SQLAlchemy를 사용한 데이터 모델 정의
"""
import uuid
from datetime import datetime
from urllib.parse import urlparse

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.orm import validates

db = SQLAlchemy()

SONG_LANGUAGES = ('Korean', 'English', 'Japanese', 'Chinese', 'Other')
SONG_STATUSES = ('active', 'pending', 'deleted')
REQUEST_STATUSES = ('active', 'pending_approval', 'approved', 'rejected')

# 백업 대상에서 제외되는 테이블
BACKUP_TABLES = ('backups', 'backup_logs')


def new_id():
    return str(uuid.uuid4())


def isoformat(value):
    return value.isoformat() if value else None


class User(db.Model):
    """사용자 모델"""
    __tablename__ = 'users'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    channel_id = db.Column(db.String(64), unique=True, nullable=False)
    channel_name = db.Column(db.String(100), nullable=False)
    display_name = db.Column(db.String(100))
    profile_image_url = db.Column(db.String(255))
    is_admin = db.Column(db.Boolean, default=False, nullable=False, index=True)
    theme = db.Column(db.String(10), default='system')
    default_playlist_view = db.Column(db.String(10), default='grid')
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    last_login_at = db.Column(db.DateTime, default=datetime.utcnow)

    @property
    def name(self):
        return self.display_name or self.channel_name

    def to_dict(self):
        return {
            'id': self.id,
            'channel_id': self.channel_id,
            'channel_name': self.channel_name,
            'display_name': self.display_name,
            'profile_image_url': self.profile_image_url,
            'is_admin': self.is_admin,
            'preferences': {
                'theme': self.theme,
                'default_playlist_view': self.default_playlist_view,
            },
            'created_at': isoformat(self.created_at),
            'last_login_at': isoformat(self.last_login_at),
        }


class SongDetail(db.Model):
    """노래책 곡 모델"""
    __tablename__ = 'song_details'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    title = db.Column(db.String(255), unique=True, nullable=False)
    artist = db.Column(db.String(255), nullable=False)
    title_alias = db.Column(db.String(255))
    artist_alias = db.Column(db.String(255))
    language = db.Column(db.String(20), index=True)
    lyrics = db.Column(db.Text)
    search_tags = db.Column(db.JSON, default=list)
    sung_count = db.Column(db.Integer, default=0, index=True)
    last_sung_date = db.Column(db.String(10))
    key_adjustment = db.Column(db.Integer)
    is_favorite = db.Column(db.Boolean, default=False, index=True)
    mr_links = db.Column(db.JSON, default=list)
    selected_mr_index = db.Column(db.Integer, default=0)
    playlists = db.Column(db.JSON, default=list)
    personal_notes = db.Column(db.Text)
    image_url = db.Column(db.String(500))
    status = db.Column(db.String(20), default='active', index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    videos = db.relationship('SongVideo', backref='song', lazy='dynamic', cascade='all, delete-orphan')

    @validates('title', 'artist')
    def validate_required_text(self, key, value):
        value = (value or '').strip()
        if not value:
            raise ValueError(f'{key} 값은 비워둘 수 없습니다.')
        return value

    @validates('language')
    def validate_language(self, key, value):
        if value and value not in SONG_LANGUAGES:
            raise ValueError(f'지원하지 않는 언어입니다: {value}')
        return value or None

    @validates('key_adjustment')
    def validate_key_adjustment(self, key, value):
        if value is None:
            return None
        value = int(value)
        if value < -12 or value > 12:
            raise ValueError('키 조절은 -12부터 +12 사이의 숫자로 입력해주세요.')
        return value

    @validates('sung_count', 'selected_mr_index')
    def validate_non_negative(self, key, value):
        value = int(value or 0)
        if value < 0:
            raise ValueError(f'{key} 값은 0 이상이어야 합니다.')
        return value

    @validates('image_url')
    def validate_image_url(self, key, value):
        if not value:
            return None
        parsed = urlparse(value)
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            raise ValueError('올바른 URL 형식을 입력해주세요.')
        return value

    @validates('status')
    def validate_status(self, key, value):
        if value not in SONG_STATUSES:
            raise ValueError(f'알 수 없는 상태입니다: {value}')
        return value

    def check_mr_selection(self):
        """selected_mr_index가 MR 링크 범위 안에 있는지 확인"""
        links = self.mr_links or []
        if links and (self.selected_mr_index or 0) >= len(links):
            raise ValueError('selectedMRIndex must be within the range of available MR links')

    def to_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'artist': self.artist,
            'title_alias': self.title_alias,
            'artist_alias': self.artist_alias,
            'language': self.language,
            'lyrics': self.lyrics,
            'search_tags': self.search_tags or [],
            'sung_count': self.sung_count or 0,
            'last_sung_date': self.last_sung_date,
            'key_adjustment': self.key_adjustment,
            'is_favorite': bool(self.is_favorite),
            'mr_links': self.mr_links or [],
            'selected_mr_index': self.selected_mr_index or 0,
            'playlists': self.playlists or [],
            'personal_notes': self.personal_notes,
            'image_url': self.image_url,
            'status': self.status,
            'created_at': isoformat(self.created_at),
            'updated_at': isoformat(self.updated_at),
        }


class SongRequest(db.Model):
    """노래 추천 게시판 모델"""
    __tablename__ = 'song_requests'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    title = db.Column(db.String(255), nullable=False)
    artist = db.Column(db.String(255), nullable=False)

    # 제출자 정보
    original_submitter = db.Column(db.String(36), nullable=False)
    original_submitter_name = db.Column(db.String(100), nullable=False)
    submitted_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    # 추천 / 조회
    recommendation_count = db.Column(db.Integer, default=0, index=True)
    recommended_by = db.Column(db.JSON, default=list)
    view_count = db.Column(db.Integer, default=0, index=True)

    # 기본 곡 정보
    language = db.Column(db.String(20))
    genre = db.Column(db.String(50))
    difficulty = db.Column(db.String(20))
    lyrics = db.Column(db.Text)
    description = db.Column(db.Text)
    search_tags = db.Column(db.JSON, default=list)
    mr_links = db.Column(db.JSON, default=list)
    selected_mr_index = db.Column(db.Integer, default=0)
    original_track_url = db.Column(db.String(500))
    lyrics_url = db.Column(db.String(500))
    key_adjustment = db.Column(db.Integer)
    duration = db.Column(db.String(20))
    release_year = db.Column(db.String(10))

    edit_history = db.Column(db.JSON, default=list)

    # 상태 관리
    status = db.Column(db.String(20), default='active', index=True)
    promoted_to_songbook = db.Column(db.Boolean, default=False, index=True)
    promoted_at = db.Column(db.DateTime)
    promoted_by = db.Column(db.String(36))
    songbook_id = db.Column(db.String(36))

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint('title', 'artist', name='unique_request_title_artist'),
    )

    @validates('status')
    def validate_status(self, key, value):
        if value not in REQUEST_STATUSES:
            raise ValueError(f'알 수 없는 상태입니다: {value}')
        return value

    def add_history(self, user_id, user_name, changes, fields_changed):
        # JSON 컬럼은 재할당해야 변경이 감지됨
        self.edit_history = (self.edit_history or []) + [{
            'user_id': user_id,
            'user_name': user_name,
            'edited_at': datetime.utcnow().isoformat(),
            'changes': changes,
            'fields_changed': list(fields_changed),
        }]

    def to_dict(self, user_id=None):
        return {
            'id': self.id,
            'title': self.title,
            'artist': self.artist,
            'original_submitter': self.original_submitter,
            'original_submitter_name': self.original_submitter_name,
            'submitted_at': isoformat(self.submitted_at),
            'recommendation_count': self.recommendation_count or 0,
            'recommended_by': self.recommended_by or [],
            'is_recommended_by_user': bool(user_id) and user_id in (self.recommended_by or []),
            'view_count': self.view_count or 0,
            'language': self.language,
            'genre': self.genre,
            'difficulty': self.difficulty,
            'lyrics': self.lyrics,
            'description': self.description,
            'search_tags': self.search_tags or [],
            'mr_links': self.mr_links or [],
            'selected_mr_index': self.selected_mr_index or 0,
            'original_track_url': self.original_track_url,
            'lyrics_url': self.lyrics_url,
            'key_adjustment': self.key_adjustment,
            'duration': self.duration,
            'release_year': self.release_year,
            'edit_history': self.edit_history or [],
            'status': self.status,
            'promoted_to_songbook': bool(self.promoted_to_songbook),
            'promoted_at': isoformat(self.promoted_at),
            'promoted_by': self.promoted_by,
            'songbook_id': self.songbook_id,
            'created_at': isoformat(self.created_at),
            'updated_at': isoformat(self.updated_at),
        }


class Playlist(db.Model):
    """사용자 플레이리스트 모델"""
    __tablename__ = 'playlists'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    user_id = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.String(500), default='')
    cover_image = db.Column(db.String(255))
    tags = db.Column(db.JSON, default=list)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # 플레이리스트 내 곡들
    songs = db.relationship('PlaylistSong', backref='playlist', lazy='dynamic',
                            cascade='all, delete-orphan', order_by='PlaylistSong.order')

    __table_args__ = (
        db.Index('idx_playlist_user_created', 'user_id', 'created_at'),
    )

    def to_dict(self, include_songs=False):
        data = {
            'id': self.id,
            'user_id': self.user_id,
            'name': self.name,
            'description': self.description,
            'cover_image': self.cover_image,
            'tags': self.tags or [],
            'song_count': self.songs.count(),
            'created_at': isoformat(self.created_at),
            'updated_at': isoformat(self.updated_at),
        }
        if include_songs:
            data['songs'] = [s.to_dict() for s in self.songs.all()]
        return data


class PlaylistSong(db.Model):
    """플레이리스트 내 곡 모델"""
    __tablename__ = 'playlist_songs'

    id = db.Column(db.Integer, primary_key=True)
    playlist_id = db.Column(db.String(36), db.ForeignKey('playlists.id'), nullable=False)
    song_id = db.Column(db.String(36), db.ForeignKey('song_details.id'), nullable=False)
    order = db.Column(db.Integer, default=0)
    added_at = db.Column(db.DateTime, default=datetime.utcnow)

    song = db.relationship('SongDetail')

    __table_args__ = (
        db.UniqueConstraint('playlist_id', 'song_id', name='unique_playlist_song'),
    )

    def to_dict(self):
        return {
            'song_id': self.song_id,
            'title': self.song.title if self.song else None,
            'artist': self.song.artist if self.song else None,
            'order': self.order,
            'added_at': isoformat(self.added_at),
        }


class Like(db.Model):
    """곡 좋아요 모델"""
    __tablename__ = 'likes'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False)
    song_id = db.Column(db.String(36), db.ForeignKey('song_details.id'), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    song = db.relationship('SongDetail')

    __table_args__ = (
        db.UniqueConstraint('user_id', 'song_id', name='unique_user_like'),
    )

    def to_dict(self):
        song = self.song
        return {
            'id': self.id,
            'song_id': self.song_id,
            'created_at': isoformat(self.created_at),
            'song': {
                'id': song.id,
                'title': song.title,
                'artist': song.artist,
                'language': song.language,
                'lyrics': song.lyrics,
                'image_url': song.image_url,
            } if song else None,
        }


class SongVideo(db.Model):
    """곡별 라이브 영상 모델"""
    __tablename__ = 'song_videos'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    song_id = db.Column(db.String(36), db.ForeignKey('song_details.id'), nullable=False, index=True)
    title = db.Column(db.String(255))
    artist = db.Column(db.String(255))
    video_url = db.Column(db.String(500), nullable=False)
    video_id = db.Column(db.String(20), nullable=False)
    sung_date = db.Column(db.DateTime, nullable=False)
    description = db.Column(db.Text)
    start_time = db.Column(db.Integer, default=0)
    end_time = db.Column(db.Integer)
    added_by = db.Column(db.String(36))
    added_by_name = db.Column(db.String(100))
    is_verified = db.Column(db.Boolean, default=False)
    verified_by = db.Column(db.String(36))
    verified_at = db.Column(db.DateTime)
    thumbnail_url = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint('song_id', 'video_url', name='unique_song_video'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'song_id': self.song_id,
            'title': self.title,
            'artist': self.artist,
            'video_url': self.video_url,
            'video_id': self.video_id,
            'sung_date': isoformat(self.sung_date),
            'description': self.description,
            'start_time': self.start_time,
            'end_time': self.end_time,
            'added_by': self.added_by,
            'added_by_name': self.added_by_name,
            'is_verified': bool(self.is_verified),
            'verified_by': self.verified_by,
            'verified_at': isoformat(self.verified_at),
            'thumbnail_url': self.thumbnail_url,
            'created_at': isoformat(self.created_at),
        }


class YouTubeChannel(db.Model):
    """수집 대상 YouTube 채널 모델"""
    __tablename__ = 'youtube_channels'

    id = db.Column(db.Integer, primary_key=True)
    channel_id = db.Column(db.String(50), unique=True, nullable=False)
    channel_name = db.Column(db.String(100))
    channel_url = db.Column(db.String(255))
    last_sync_date = db.Column(db.DateTime)
    total_videos = db.Column(db.Integer, default=0)
    total_comments = db.Column(db.Integer, default=0)
    timeline_comments = db.Column(db.Integer, default=0)

    def to_dict(self):
        return {
            'channel_id': self.channel_id,
            'channel_name': self.channel_name,
            'channel_url': self.channel_url,
            'last_sync_date': isoformat(self.last_sync_date),
            'total_videos': self.total_videos,
            'total_comments': self.total_comments,
            'timeline_comments': self.timeline_comments,
        }


class YouTubeVideo(db.Model):
    """수집된 YouTube 영상 모델"""
    __tablename__ = 'youtube_videos'

    id = db.Column(db.Integer, primary_key=True)
    video_id = db.Column(db.String(20), unique=True, nullable=False)
    channel_id = db.Column(db.String(50), index=True)
    title = db.Column(db.String(255))
    published_at = db.Column(db.DateTime)
    thumbnail_url = db.Column(db.String(255))
    total_comments = db.Column(db.Integer, default=0)
    timeline_comments = db.Column(db.Integer, default=0)
    last_comment_sync = db.Column(db.DateTime)

    def to_dict(self):
        return {
            'video_id': self.video_id,
            'channel_id': self.channel_id,
            'title': self.title,
            'published_at': isoformat(self.published_at),
            'thumbnail_url': self.thumbnail_url,
            'total_comments': self.total_comments,
            'timeline_comments': self.timeline_comments,
            'last_comment_sync': isoformat(self.last_comment_sync),
        }


class YouTubeComment(db.Model):
    """수집된 YouTube 댓글 모델"""
    __tablename__ = 'youtube_comments'

    id = db.Column(db.Integer, primary_key=True)
    comment_id = db.Column(db.String(100), unique=True, nullable=False)
    video_id = db.Column(db.String(20), index=True)
    author_name = db.Column(db.String(100))
    text_content = db.Column(db.Text)
    published_at = db.Column(db.DateTime)
    like_count = db.Column(db.Integer, default=0)
    is_timeline = db.Column(db.Boolean, default=False, index=True)
    extracted_timestamps = db.Column(db.JSON, default=list)
    is_processed = db.Column(db.Boolean, default=False)
    processed_by = db.Column(db.String(64))
    processed_at = db.Column(db.DateTime)
    manually_marked = db.Column(db.Boolean, default=False)

    def to_dict(self):
        return {
            'comment_id': self.comment_id,
            'video_id': self.video_id,
            'author_name': self.author_name,
            'text_content': self.text_content,
            'published_at': isoformat(self.published_at),
            'like_count': self.like_count,
            'is_timeline': bool(self.is_timeline),
            'extracted_timestamps': self.extracted_timestamps or [],
            'is_processed': bool(self.is_processed),
            'processed_by': self.processed_by,
            'processed_at': isoformat(self.processed_at),
            'manually_marked': bool(self.manually_marked),
        }


class LiveClip(db.Model):
    """타임라인 댓글에서 파싱된 라이브 클립 모델"""
    __tablename__ = 'live_clips'

    id = db.Column(db.String(120), primary_key=True)
    video_id = db.Column(db.String(20), nullable=False)
    video_title = db.Column(db.String(255), nullable=False)
    uploaded_date = db.Column(db.DateTime)
    original_date_string = db.Column(db.String(50))
    artist = db.Column(db.String(255), nullable=False)
    song_title = db.Column(db.String(255), nullable=False)
    video_url = db.Column(db.String(500), nullable=False)
    start_time_seconds = db.Column(db.Integer, nullable=False)
    end_time_seconds = db.Column(db.Integer)
    duration = db.Column(db.Integer)
    is_relevant = db.Column(db.Boolean, default=True)
    is_excluded = db.Column(db.Boolean, default=False)
    matched_song = db.Column(db.JSON(none_as_null=True))
    original_comment = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        db.Index('idx_live_clip_video_start', 'video_id', 'start_time_seconds'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'video_id': self.video_id,
            'video_title': self.video_title,
            'uploaded_date': isoformat(self.uploaded_date),
            'original_date_string': self.original_date_string,
            'artist': self.artist,
            'song_title': self.song_title,
            'video_url': self.video_url,
            'start_time_seconds': self.start_time_seconds,
            'end_time_seconds': self.end_time_seconds,
            'duration': self.duration,
            'is_relevant': bool(self.is_relevant),
            'is_excluded': bool(self.is_excluded),
            'matched_song': self.matched_song,
            'original_comment': self.original_comment,
            'created_at': isoformat(self.created_at),
            'updated_at': isoformat(self.updated_at),
        }


class Backup(db.Model):
    """데이터베이스 백업 스냅샷 모델"""
    __tablename__ = 'backups'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False)
    timestamp = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    collections = db.Column(db.JSON, default=dict)
    stats = db.Column(db.JSON, default=dict)

    def to_dict(self, include_data=False):
        data = {
            'name': self.name,
            'timestamp': isoformat(self.timestamp),
            'metadata': self.stats or {},
        }
        if include_data:
            data['collections'] = self.collections or {}
        return data


class BackupLog(db.Model):
    """백업 작업 로그 모델"""
    __tablename__ = 'backup_logs'

    id = db.Column(db.Integer, primary_key=True)
    action = db.Column(db.String(50), nullable=False)
    backup_name = db.Column(db.String(100))
    timestamp = db.Column(db.DateTime, default=datetime.utcnow)
    details = db.Column(db.JSON, default=dict)

    def to_dict(self):
        return {
            'action': self.action,
            'backup_name': self.backup_name,
            'timestamp': isoformat(self.timestamp),
            'details': self.details or {},
        }


def init_db(app):
    """데이터베이스 초기화"""
    db.init_app(app)
    with app.app_context():
        db.create_all()
