"""YouTube 클라이언트 테스트 (yt-dlp / Data API는 mock 처리)"""
from datetime import datetime
from unittest.mock import patch, MagicMock

import pytest
import yt_dlp

from youtube_client import (
    YouTubeAPIError, extract_video_id, is_youtube_url, parse_api_datetime,
    list_channel_videos, get_video_comments
)


def test_extract_video_id():
    assert extract_video_id('https://www.youtube.com/watch?v=abc123&t=10') == 'abc123'
    assert extract_video_id('https://youtu.be/xyz789') == 'xyz789'
    assert extract_video_id('https://www.youtube.com/live/live42?si=1') == 'live42'
    assert extract_video_id('https://example.com') is None


def test_is_youtube_url():
    assert is_youtube_url('https://www.youtube.com/watch?v=abc123')
    assert is_youtube_url('https://youtu.be/abc123')
    assert not is_youtube_url('https://vimeo.com/123')
    assert not is_youtube_url('')


def test_parse_api_datetime():
    assert parse_api_datetime('2024-03-15T12:00:00Z') == datetime(2024, 3, 15, 12, 0, 0)
    assert parse_api_datetime('not a date') is None
    assert parse_api_datetime(None) is None


def mock_ydl(info=None, error=None):
    ydl = MagicMock()
    if error:
        ydl.extract_info.side_effect = error
    else:
        ydl.extract_info.return_value = info
    context = MagicMock()
    context.__enter__.return_value = ydl
    return context


@patch('youtube_client.yt_dlp.YoutubeDL')
def test_list_channel_videos(mock_ydl_class):
    mock_ydl_class.return_value = mock_ydl({'entries': [
        {'id': 'new1', 'title': '24.03.15 노래방송', 'upload_date': '20240315'},
        {'id': 'old1', 'title': '옛날 방송', 'upload_date': '20230101'},
        {'id': 'nodate', 'title': '날짜 없음'},
        None,
    ]})

    videos = list_channel_videos('UC123', published_after=datetime(2024, 1, 1), max_videos=10)

    assert [v['video_id'] for v in videos] == ['new1', 'nodate']
    assert videos[0]['published_at'] == datetime(2024, 3, 15)
    assert videos[0]['thumbnail_url'] == 'https://img.youtube.com/vi/new1/mqdefault.jpg'
    opts = mock_ydl_class.call_args.args[0]
    assert opts['extract_flat'] is True
    assert opts['playlistend'] == 10


@patch('youtube_client.yt_dlp.YoutubeDL')
def test_list_channel_videos_download_error(mock_ydl_class):
    mock_ydl_class.return_value = mock_ydl(error=yt_dlp.utils.DownloadError('not found'))
    with pytest.raises(YouTubeAPIError):
        list_channel_videos('UC404')


@patch('youtube_client.yt_dlp.YoutubeDL')
def test_list_channel_videos_missing_channel(mock_ydl_class):
    mock_ydl_class.return_value = mock_ydl(info=None)
    with pytest.raises(YouTubeAPIError):
        list_channel_videos('UC404')


def comment_item(comment_id, text):
    return {
        'id': comment_id,
        'snippet': {'topLevelComment': {'snippet': {
            'authorDisplayName': '팬',
            'textDisplay': text,
            'publishedAt': '2024-03-16T01:00:00Z',
            'likeCount': 3,
        }}},
    }


@patch('youtube_client.requests.get')
def test_get_video_comments(mock_get):
    mock_get.return_value = MagicMock(status_code=200, ok=True)
    mock_get.return_value.json.return_value = {'items': [comment_item('c1', '1:05 아이유 - 좋은 날')]}

    comments = get_video_comments('vid1', 'key')

    assert comments == [{
        'comment_id': 'c1',
        'author_name': '팬',
        'text_content': '1:05 아이유 - 좋은 날',
        'published_at': datetime(2024, 3, 16, 1, 0, 0),
        'like_count': 3,
    }]
    params = mock_get.call_args.kwargs['params']
    assert params['videoId'] == 'vid1'
    assert params['maxResults'] == 100


@patch('youtube_client.requests.get')
def test_get_video_comments_disabled(mock_get):
    mock_get.return_value = MagicMock(status_code=403, ok=False)
    assert get_video_comments('vid1', 'key') == []


@patch('youtube_client.requests.get')
def test_get_video_comments_api_error(mock_get):
    mock_get.return_value = MagicMock(status_code=500, ok=False)
    with pytest.raises(YouTubeAPIError):
        get_video_comments('vid1', 'key')


def test_get_video_comments_requires_key():
    with pytest.raises(YouTubeAPIError):
        get_video_comments('vid1', None)
