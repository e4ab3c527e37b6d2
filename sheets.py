"""
Google Sheets 노래 목록 연동
시트의 곡 목록을 읽어오고 데이터베이스의 곡 상세 정보와 병합합니다.
"""
import logging
import re
from datetime import date, datetime, timedelta
from urllib.parse import quote

import requests

logger = logging.getLogger(__name__)

SHEETS_URL = 'https://sheets.googleapis.com/v4/spreadsheets/{sheet_id}/values/{range}'
SHEET_RANGES = ('Sheet1', 'A:Z', '시트1', '노래목록')
REQUEST_TIMEOUT = 10

# 헤더 키워드 -> 컬럼
COLUMN_KEYWORDS = {
    'title': ('제목', 'title', '곡명', '노래'),
    'artist': ('아티스트', 'artist', '가수', '원곡자'),
    'language': ('언어', 'language', 'lang'),
    'mr': ('mr', 'link', '링크', '반주'),
    'lyrics': ('가사', 'lyrics'),
    'tags': ('태그', 'tags', '분류'),
    'date': ('날짜', 'date', '추가일'),
}

# 데이터베이스 값이 시트 값을 덮어쓰는 필드
DETAIL_OVERLAY_FIELDS = (
    'title_alias', 'artist_alias', 'search_tags', 'sung_count', 'last_sung_date',
    'key_adjustment', 'is_favorite', 'selected_mr_index', 'playlists',
    'personal_notes', 'image_url', 'status',
)

_KANA_RE = re.compile(r'[぀-ヿ]')
_ENGLISH_RE = re.compile(r'^[A-Za-z\s]+$')

ERROR_MESSAGES = {
    'MISSING_API_KEY': {
        'title': 'API 키가 설정되지 않았습니다',
        'message': 'Google Sheets API 키가 필요합니다.',
        'suggestion': 'GOOGLE_SHEETS_API_KEY 환경변수를 설정해주세요.',
    },
    'API_KEY_INVALID': {
        'title': 'API 키가 유효하지 않습니다',
        'message': '설정된 Google Sheets API 키가 올바르지 않거나 권한이 없습니다.',
        'suggestion': 'API 키를 다시 확인하거나 새로 생성해주세요.',
    },
    'SHEET_NOT_FOUND': {
        'title': '시트를 찾을 수 없습니다',
        'message': '지정된 구글 시트에 접근할 수 없습니다.',
        'suggestion': '시트가 공개되어 있는지 확인하고 시트 ID가 올바른지 확인해주세요.',
    },
    'NO_DATA_FOUND': {
        'title': '노래 데이터가 없습니다',
        'message': '구글 시트에서 노래 데이터를 찾을 수 없습니다.',
        'suggestion': '시트에 제목과 아티스트 정보가 포함된 데이터가 있는지 확인해주세요.',
    },
}

DEFAULT_ERROR_MESSAGE = {
    'title': '데이터를 불러올 수 없습니다',
    'message': '구글 시트에서 노래 데이터를 가져오는 중 문제가 발생했습니다.',
    'suggestion': '잠시 후 다시 시도해주세요. 문제가 지속되면 네트워크 연결을 확인해주세요.',
}


class SheetsError(Exception):
    """Google Sheets 조회 실패 (code로 원인 구분)"""

    def __init__(self, code):
        super().__init__(code)
        self.code = code


def get_error_message(code):
    """에러 코드에 대한 사용자 안내 메시지"""
    return ERROR_MESSAGES.get(code, DEFAULT_ERROR_MESSAGE)


def fetch_songs_from_sheet(sheet_id, api_key):
    """여러 범위를 순서대로 시도해 곡 데이터가 있는 시트를 읽어옴"""
    if not api_key or api_key == 'test_key':
        raise SheetsError('MISSING_API_KEY')

    for sheet_range in SHEET_RANGES:
        url = SHEETS_URL.format(sheet_id=sheet_id, range=quote(sheet_range))
        try:
            response = requests.get(url, params={'key': api_key}, timeout=REQUEST_TIMEOUT)
        except requests.RequestException as e:
            logger.warning(f"Failed to fetch from range {sheet_range}: {e}")
            continue

        if response.status_code == 403:
            raise SheetsError('API_KEY_INVALID')
        if response.status_code == 404:
            raise SheetsError('SHEET_NOT_FOUND')
        if not response.ok:
            logger.warning(f"Range {sheet_range} returned {response.status_code}")
            continue

        values = response.json().get('values') or []
        songs = parse_sheet_data(values)
        if songs:
            logger.info(f"Fetched {len(songs)} songs from range: {sheet_range}")
            return songs

    raise SheetsError('NO_DATA_FOUND')


def _column_index(headers, keywords):
    for keyword in keywords:
        for index, header in enumerate(headers):
            if keyword in header:
                return index
    return -1


def _cell(row, index):
    if 0 <= index < len(row):
        return (row[index] or '').strip()
    return ''


def detect_language(text):
    if _KANA_RE.search(text):
        return 'Japanese'
    if _ENGLISH_RE.match(text):
        return 'English'
    return 'Korean'


def parse_sheet_data(values):
    """시트 값(헤더 + 행)을 곡 딕셔너리 목록으로 변환"""
    if not values or len(values) < 2:
        return []

    headers = [str(h).lower().strip() for h in values[0]]
    columns = {name: _column_index(headers, keywords) for name, keywords in COLUMN_KEYWORDS.items()}
    logger.debug(f"Detected column indices: {columns}")

    songs = []
    for row in values[1:]:
        if not row:
            continue
        # 헤더를 찾지 못하면 첫 열을 곡명, 둘째 열을 아티스트로 사용
        title = _cell(row, columns['title']) or _cell(row, 0)
        artist = _cell(row, columns['artist']) or _cell(row, 1)
        if not title:
            continue

        mr_cell = _cell(row, columns['mr'])
        tags_cell = _cell(row, columns['tags'])
        songs.append({
            'id': f'song-{len(songs) + 1}',
            'title': title,
            'artist': artist or 'Unknown Artist',
            'language': _cell(row, columns['language']) or detect_language(title + (artist or '')),
            'mr_links': [link.strip() for link in re.split(r'[,\n]', mr_cell) if link.strip()],
            'lyrics': _cell(row, columns['lyrics']),
            'tags': [tag.strip() for tag in tags_cell.split(',') if tag.strip()],
            'date_added': _cell(row, columns['date']) or date.today().isoformat(),
            'source': 'sheet',
        })
    return songs


def _title_key(title):
    return re.sub(r'\s+', '', title or '').lower()


def merge_with_song_details(sheet_songs, details):
    """
    시트 곡 목록과 데이터베이스 곡 상세 정보 병합

    같은 제목(공백/대소문자 무시)의 데이터베이스 곡이 있으면 상세 정보를 덮어쓰고,
    시트에 없는 데이터베이스 곡은 목록 뒤에 추가합니다.
    """
    details_by_title = {_title_key(d['title']): d for d in details}
    used = set()

    merged = []
    for song in sheet_songs:
        key = _title_key(song['title'])
        detail = details_by_title.get(key)
        if not detail:
            merged.append(dict(song))
            continue

        used.add(key)
        item = dict(song)
        item['id'] = detail['id']
        item['sheet_id'] = song['id']
        for field in DETAIL_OVERLAY_FIELDS:
            if detail.get(field) is not None:
                item[field] = detail[field]
        if detail.get('language'):
            item['language'] = detail['language']
        if detail.get('lyrics'):
            item['lyrics'] = detail['lyrics']
        if detail.get('mr_links'):
            item['mr_links_detailed'] = detail['mr_links']
            item['mr_links'] = [link['url'] for link in detail['mr_links'] if link.get('url')]
        item['source'] = 'merged'
        merged.append(item)

    for key, detail in details_by_title.items():
        if key in used:
            continue
        item = dict(detail)
        item['mr_links_detailed'] = detail.get('mr_links') or []
        item['mr_links'] = [link['url'] for link in item['mr_links_detailed'] if link.get('url')]
        item['tags'] = []
        item['date_added'] = (detail.get('created_at') or '')[:10] or None
        item['source'] = 'database'
        merged.append(item)

    return [song for song in merged if song.get('status', 'active') != 'deleted']


def classify_song_status(song, today=None):
    """관리 화면용 곡 상태: new / missing-mr / missing-lyrics / complete"""
    today = today or date.today()
    has_mr = bool(song.get('mr_links'))
    has_lyrics = bool((song.get('lyrics') or '').strip())

    if not has_mr and not has_lyrics:
        return 'new'
    if not has_mr:
        return 'missing-mr'
    if not has_lyrics:
        return 'missing-lyrics'

    # 최근 30일 안에 추가된 곡은 신규로 표시
    added = song.get('date_added')
    try:
        added_date = datetime.strptime(added[:10], '%Y-%m-%d').date() if added else None
    except ValueError:
        added_date = None
    if added_date and added_date > today - timedelta(days=30):
        return 'new'
    return 'complete'


def summarize_songs(songs):
    """관리 화면용 곡 목록 통계"""
    statuses = [s['status'] for s in songs]
    languages = [s.get('language') for s in songs]
    return {
        'total': len(songs),
        'complete': statuses.count('complete'),
        'missing_mr': statuses.count('missing-mr'),
        'missing_lyrics': statuses.count('missing-lyrics'),
        'new_songs': statuses.count('new'),
        'languages': {
            'Korean': languages.count('Korean'),
            'English': languages.count('English'),
            'Japanese': languages.count('Japanese'),
            'Other': len([lang for lang in languages if lang not in ('Korean', 'English', 'Japanese')]),
        },
    }
