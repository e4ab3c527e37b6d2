"""
YouTube 데이터 수집 클라이언트
채널 영상 목록은 yt-dlp로, 댓글은 YouTube Data API로 가져옵니다.
"""
import logging
import re
from datetime import datetime

import requests
import yt_dlp

logger = logging.getLogger(__name__)

COMMENT_THREADS_URL = 'https://www.googleapis.com/youtube/v3/commentThreads'
REQUEST_TIMEOUT = 10

_VIDEO_ID_RE = re.compile(r'(?:youtube\.com/watch\?v=|youtu\.be/|youtube\.com/live/)([^&\n?#/]+)')
_YOUTUBE_URL_RE = re.compile(r'^https?://(www\.|m\.)?(youtube\.com/watch\?v=|youtu\.be/|youtube\.com/live/)[\w-]+')


class YouTubeAPIError(Exception):
    """YouTube 데이터 조회 실패"""


def get_ydl_base_opts():
    """yt-dlp 기본 옵션 반환"""
    return {
        'quiet': True,
        'no_warnings': True,
        'user_agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36',
        'referer': 'https://www.youtube.com/',
        'http_headers': {
            'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8',
            'Accept-Language': 'ko-kr,ko;q=0.9,en-us;q=0.5',
        }
    }


def extract_video_id(url):
    match = _VIDEO_ID_RE.search(url or '')
    return match.group(1) if match else None


def is_youtube_url(url):
    return bool(_YOUTUBE_URL_RE.match(url or ''))


def thumbnail_url(video_id):
    return f"https://img.youtube.com/vi/{video_id}/mqdefault.jpg"


def _entry_published_at(entry):
    timestamp = entry.get('timestamp') or entry.get('release_timestamp')
    if timestamp:
        return datetime.utcfromtimestamp(timestamp)
    upload_date = entry.get('upload_date')
    if upload_date:
        try:
            return datetime.strptime(upload_date, '%Y%m%d')
        except ValueError:
            return None
    return None


def parse_api_datetime(value):
    """'2024-03-15T12:00:00Z' 형식을 naive UTC datetime으로 변환"""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace('Z', '+00:00')).replace(tzinfo=None)
    except ValueError:
        return None


def list_channel_videos(channel_id, published_after=None, max_videos=None):
    """
    채널 업로드 영상 목록 조회

    Args:
        channel_id: YouTube 채널 ID (UC...)
        published_after: 이 시각 이후에 게시된 영상만 반환 (게시일을 알 수 없는 영상은 포함)
        max_videos: 최대 영상 수 (None이면 전체)
    """
    channel_url = f"https://www.youtube.com/channel/{channel_id}/videos"
    ydl_opts = get_ydl_base_opts()
    ydl_opts.update({
        'extract_flat': True,
        'ignoreerrors': True,
    })
    if max_videos:
        ydl_opts['playlistend'] = max_videos

    try:
        with yt_dlp.YoutubeDL(ydl_opts) as ydl:
            info = ydl.extract_info(channel_url, download=False)
    except yt_dlp.utils.DownloadError as e:
        raise YouTubeAPIError(f'채널 정보 조회 오류: {e}') from e

    if not info:
        raise YouTubeAPIError('채널을 찾을 수 없습니다.')

    videos = []
    for entry in info.get('entries') or []:
        if not entry or not entry.get('id'):
            continue
        published_at = _entry_published_at(entry)
        if published_after and published_at and published_at <= published_after:
            continue
        videos.append({
            'video_id': entry.get('id'),
            'title': entry.get('title') or '',
            'published_at': published_at,
            'thumbnail_url': thumbnail_url(entry.get('id')),
        })

    logger.info(f"Found {len(videos)} videos on channel {channel_id}")
    return videos


def get_video_comments(video_id, api_key):
    """
    영상의 최신 댓글 스레드(최대 100개) 조회

    댓글이 비활성화된 영상(403)은 빈 목록을 반환합니다.
    """
    if not api_key:
        raise YouTubeAPIError('YouTube API 키가 설정되지 않았습니다.')

    params = {
        'key': api_key,
        'videoId': video_id,
        'part': 'snippet',
        'maxResults': 100,
        'order': 'time',
    }
    response = requests.get(COMMENT_THREADS_URL, params=params, timeout=REQUEST_TIMEOUT)

    if response.status_code == 403:
        logger.debug(f"Comments disabled for video {video_id}")
        return []
    if not response.ok:
        raise YouTubeAPIError(f'YouTube API 오류: {response.status_code}')

    comments = []
    for item in response.json().get('items', []):
        snippet = item['snippet']['topLevelComment']['snippet']
        comments.append({
            'comment_id': item['id'],
            'author_name': snippet.get('authorDisplayName'),
            'text_content': snippet.get('textDisplay', ''),
            'published_at': parse_api_datetime(snippet.get('publishedAt')),
            'like_count': snippet.get('likeCount') or 0,
        })
    return comments
