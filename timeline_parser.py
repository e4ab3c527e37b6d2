"""
YouTube 타임라인 댓글 파서
댓글에서 타임스탬프를 찾아 라이브 클립(곡 구간) 목록으로 변환하고,
노래책 곡과의 유사도 매칭을 제공합니다.
"""
import html
import logging
import re
from datetime import datetime
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from bs4 import BeautifulSoup, Comment, Tag
from rapidfuzz.distance import Levenshtein

logger = logging.getLogger(__name__)

UNKNOWN_ARTIST = '알 수 없음'

# 타임라인 댓글 판별용 패턴
TIMELINE_PATTERNS = [
    re.compile(r'(\d{1,2}):(\d{2}):(\d{2})'),        # 1:23:45
    re.compile(r'(\d{1,2}):(\d{2})'),                # 3:45
    re.compile(r'@(\d{1,2}):(\d{2})'),               # @3:45
    re.compile(r'(\d{1,2})분\s*(\d{1,2})초'),          # 3분45초
    re.compile(r'(?<!\d)(\d{1,2})분'),                # 3분
    re.compile(r'(?<!\d)(\d{1,3})초'),                # 45초
]

SONG_SEPARATORS = (' - ', ' – ', ' — ', ' | ', ' / ')

_WHITESPACE_RE = re.compile(r'\s+')
_TIME_TEXT_RE = re.compile(r'^(?:(\d{1,2}):)?(\d{1,2}):(\d{2})$')
_T_PARAM_RE = re.compile(r'[?&#]t=([0-9hms]+)')
_YT_PARAM_RE = re.compile(r'^(?:(\d+)h)?(?:(\d+)m)?(?:(\d+)s?)?$')
_LEADING_MARKER_RE = re.compile(r'^[\U0001F300-\U0001FAFF☀-➿]+\s*')
_LEADING_BRACKET_RE = re.compile(r'^\[[^\]]*\]\s*')
_LEADING_DASH_RE = re.compile(r'^\s*[-~]\s*')
_VS_RE = re.compile(r'^(.*?)\s+VS(?:\s+\d{1,2}:\d{2}(?::\d{2})?(?:\s.*)?)?$')
_PUNCT_ONLY_RE = re.compile(r'^[?!.~\s]*$')

# 영상 제목의 날짜 패턴 (YY.MM.DD가 최우선)
_SHORT_DATE_RE = re.compile(r'(?<!\d)(\d{2})\.(\d{1,2})\.(\d{1,2})(?!\d)')
_DATE_PATTERNS = [
    (re.compile(r'(\d{4})[.\-/](\d{1,2})[.\-/](\d{1,2})'), lambda m: (m[1], m[2], m[3])),
    (re.compile(r'(\d{1,2})[.\-/](\d{1,2})[.\-/](\d{4})'), lambda m: (m[3], m[1], m[2])),
    (re.compile(r'(\d{4})년\s*(\d{1,2})월\s*(\d{1,2})일'), lambda m: (m[1], m[2], m[3])),
]


# ============== 타임스탬프 감지 ==============

def is_timeline_comment(text):
    """댓글에 타임스탬프 패턴이 하나라도 있는지 확인"""
    if not text:
        return False
    return any(pattern.search(text) for pattern in TIMELINE_PATTERNS)


def extract_timestamps(text):
    """댓글에서 타임스탬프 문자열 추출 (중복 제거, 발견 순서 유지)"""
    if not text:
        return []
    found = []
    for pattern in TIMELINE_PATTERNS:
        for match in pattern.finditer(text):
            if match.group(0) not in found:
                found.append(match.group(0))
    return found


def decode_html_entities(text):
    """숫자/16진수/이름 기반 HTML 엔티티 디코딩"""
    return html.unescape(text or '')


def parse_time_to_seconds(value):
    """
    시간 문자열을 초로 변환

    지원 형식: '1:23:45', '23:45', '90', 그리고 YouTube t 파라미터 형식 '90s', '1h2m3s'.
    해석할 수 없으면 0을 반환합니다.
    """
    if value is None:
        return 0
    value = str(value).strip()

    match = _TIME_TEXT_RE.match(value)
    if match:
        hours = int(match.group(1) or 0)
        return hours * 3600 + int(match.group(2)) * 60 + int(match.group(3))

    if value.isdigit():
        return int(value)

    match = _YT_PARAM_RE.match(value)
    if match and any(match.groups()):
        hours, minutes, seconds = (int(g or 0) for g in match.groups())
        return hours * 3600 + minutes * 60 + seconds

    return 0


def format_seconds(seconds):
    """초를 M:SS 또는 H:MM:SS 형식으로 변환"""
    seconds = int(seconds or 0)
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f'{hours}:{minutes:02d}:{secs:02d}'
    return f'{minutes}:{secs:02d}'


# ============== 곡 정보 파싱 ==============

def parse_song_info(song_text):
    """'아티스트 - 곡명' 형태의 텍스트를 분리. 구분자가 없으면 전체를 곡명으로 처리"""
    clean_text = (song_text or '').strip()

    for separator in SONG_SEPARATORS:
        if separator in clean_text:
            parts = clean_text.split(separator)
            if len(parts) >= 2 and parts[0].strip() and parts[1].strip():
                return {
                    'artist': parts[0].strip(),
                    'song_title': separator.join(parts[1:]).strip(),
                }

    return {'artist': UNKNOWN_ARTIST, 'song_title': clean_text}


def _clean_text(text):
    text = _WHITESPACE_RE.sub(' ', text or '').strip()

    text = _LEADING_MARKER_RE.sub('', text)
    text = _LEADING_BRACKET_RE.sub('', text)
    text = _LEADING_DASH_RE.sub('', text).strip()

    # "곡1 VS 12:34 곡2" 형태는 앞 곡만 현재 타임스탬프에 연결
    vs_match = _VS_RE.match(text)
    if vs_match and vs_match.group(1).strip():
        text = vs_match.group(1).strip()

    return text


def clean_segment_text(fragment):
    """타임스탬프 뒤에 오는 구간 HTML 조각을 곡 정보 텍스트로 정리"""
    text = BeautifulSoup(fragment or '', 'html.parser').get_text(' ')
    return _clean_text(text)


def is_music_content(text):
    # 빈 텍스트나 의미 없는 기호만 있는 경우 제외
    return bool(text) and not _PUNCT_ONLY_RE.match(text)


def extract_date_from_title(title):
    """
    영상 제목에서 방송 날짜 추출

    Returns:
        (datetime 또는 None, 원본 날짜 문자열 또는 None)
    """
    if not title:
        return None, None

    match = _SHORT_DATE_RE.search(title)
    if match:
        year = int(match.group(1))
        full_year = 2000 + year if year < 50 else 1900 + year
        try:
            return datetime(full_year, int(match.group(2)), int(match.group(3))), match.group(0)
        except ValueError:
            logger.debug(f"Invalid short date in title: {match.group(0)}")

    for pattern, parts in _DATE_PATTERNS:
        match = pattern.search(title)
        if not match:
            continue
        year, month, day = (int(p) for p in parts(match))
        try:
            return datetime(year, month, day), match.group(0)
        except ValueError:
            logger.debug(f"Invalid date in title: {match.group(0)}")

    return None, None


# ============== 타임라인 파싱 ==============

def is_youtube_link(url):
    return 'youtube.com/watch' in url or 'youtu.be/' in url or 'youtube.com/live/' in url


def strip_time_param(url):
    """URL에서 t 파라미터 제거"""
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k != 't']
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), ''))


def _anchor_seconds(url, anchor_text):
    match = _T_PARAM_RE.search(url)
    if match:
        seconds = parse_time_to_seconds(match.group(1))
        if seconds or match.group(1) in ('0', '0s'):
            return seconds
    text = anchor_text.strip()
    if _TIME_TEXT_RE.match(text):
        return parse_time_to_seconds(text)
    return None


def _segment_lines(anchor, stop_ids):
    """링크 다음부터 다음 타임스탬프 링크 전까지의 텍스트를 줄 단위로 수집"""
    lines = ['']
    for sibling in anchor.next_siblings:
        if isinstance(sibling, Comment):
            continue
        if isinstance(sibling, Tag):
            if id(sibling) in stop_ids:
                break
            if sibling.name == 'br':
                lines.append('')
                continue
            text = sibling.get_text(' ')
        else:
            text = str(sibling)
        parts = text.split('\n')
        lines[-1] += parts[0]
        lines.extend(parts[1:])
    return lines


def parse_timeline_comment(html_text, video_title=''):
    """
    타임라인 댓글 HTML을 곡 구간 목록으로 변환

    YouTube 링크(<a>)마다 시작 시간을 읽고, 다음 링크 전까지의 첫 줄을 곡 정보로 사용합니다.
    결과는 시작 시간순으로 정렬되며 각 구간의 종료 시간은 다음 구간의 시작 시간입니다.
    """
    soup = BeautifulSoup(html_text or '', 'html.parser')

    anchors = []
    for tag in soup.find_all('a'):
        url = tag.get('href') or ''
        if not is_youtube_link(url):
            logger.debug(f"Skipping non-YouTube link: {url}")
            continue
        seconds = _anchor_seconds(url, tag.get_text())
        if seconds is None:
            continue
        anchors.append({'tag': tag, 'url': url, 'seconds': seconds})

    stop_ids = {id(anchor['tag']) for anchor in anchors}

    raw_matches = []
    for anchor in anchors:
        # 줄바꿈 이전의 첫 줄만 곡 정보로 사용
        lines = (_clean_text(line) for line in _segment_lines(anchor['tag'], stop_ids))
        content = next((line for line in lines if line), '')

        if len(content) < 2 or not is_music_content(content):
            continue

        song_info = parse_song_info(content)
        raw_matches.append({
            'url': anchor['url'],
            'time_seconds': anchor['seconds'],
            'time_text': format_seconds(anchor['seconds']),
            'content': content,
            'artist': song_info['artist'],
            'song_title': song_info['song_title'],
            'is_relevant': song_info['artist'] != UNKNOWN_ARTIST,
        })

    raw_matches.sort(key=lambda m: m['time_seconds'])

    base_video_url = strip_time_param(raw_matches[0]['url']) if raw_matches else ''
    uploaded_date, original_date_string = extract_date_from_title(video_title)

    entries = []
    for index, current in enumerate(raw_matches):
        following = raw_matches[index + 1] if index + 1 < len(raw_matches) else None
        end_time = following['time_seconds'] if following else None
        entries.append({
            'video_url': base_video_url,
            'artist': current['artist'],
            'song_title': current['song_title'],
            'content': current['content'],
            'time_text': current['time_text'],
            'start_time_seconds': current['time_seconds'],
            'end_time_seconds': end_time,
            'duration': end_time - current['time_seconds'] if end_time is not None else None,
            'uploaded_date': uploaded_date,
            'original_date_string': original_date_string,
            'is_relevant': current['is_relevant'],
        })

    logger.debug(f"Parsed {len(entries)} timeline entries from comment")
    return entries


# ============== 곡 매칭 ==============

def levenshtein_distance(a, b):
    return Levenshtein.distance(a or '', b or '')


def calculate_similarity(str1, str2):
    """Levenshtein 거리 기반 문자열 유사도 (0~1)"""
    if not str1 or not str2:
        return 0.0

    s1 = str1.lower().strip()
    s2 = str2.lower().strip()
    if s1 == s2:
        return 1.0

    max_len = max(len(s1), len(s2))
    if max_len == 0:
        return 1.0
    return (max_len - levenshtein_distance(s1, s2)) / max_len


def normalize_for_matching(text):
    """매칭용 텍스트 정규화 (괄호/특수문자 제거, 공백 정리)"""
    text = (text or '').lower().strip()
    text = re.sub(r'[()\[\]{}]', '', text)
    text = _WHITESPACE_RE.sub(' ', text)
    text = re.sub(r'[^\w\s]', '', text)
    return text.strip()


CANDIDATE_THRESHOLD = 0.6
AUTO_MATCH_THRESHOLD = 0.8
ARTIST_WEIGHT = 0.4
TITLE_WEIGHT = 0.6


def find_song_matches(artist, song_title, songs, limit=5):
    """
    아티스트/곡명과 유사한 노래책 곡 후보 찾기

    Args:
        songs: id, title, artist, title_alias, artist_alias, search_tags 키를 가진 딕셔너리 목록
    Returns:
        신뢰도 내림차순으로 정렬된 후보 목록 (최대 limit개)
    """
    input_artist = normalize_for_matching(artist)
    input_title = normalize_for_matching(song_title)

    matches = []
    for song in songs:
        artist_similarity = calculate_similarity(input_artist, normalize_for_matching(song.get('artist')))
        title_similarity = calculate_similarity(input_title, normalize_for_matching(song.get('title')))

        best_artist = artist_similarity
        best_title = title_similarity

        if song.get('artist_alias'):
            best_artist = max(best_artist, calculate_similarity(
                input_artist, normalize_for_matching(song['artist_alias'])))
        if song.get('title_alias'):
            best_title = max(best_title, calculate_similarity(
                input_title, normalize_for_matching(song['title_alias'])))

        for tag in song.get('search_tags') or []:
            normalized_tag = normalize_for_matching(tag)
            best_artist = max(best_artist, calculate_similarity(input_artist, normalized_tag))
            best_title = max(best_title, calculate_similarity(input_title, normalized_tag))

        confidence = best_artist * ARTIST_WEIGHT + best_title * TITLE_WEIGHT
        if confidence >= CANDIDATE_THRESHOLD:
            matches.append({
                'song_id': song.get('id'),
                'title': song.get('title'),
                'artist': song.get('artist'),
                'confidence': round(confidence, 4),
                'artist_similarity': round(best_artist, 4),
                'title_similarity': round(best_title, 4),
                'matched_field': 'alias' if (best_artist > artist_similarity
                                             or best_title > title_similarity) else 'main',
            })

    matches.sort(key=lambda m: m['confidence'], reverse=True)
    return matches[:limit]


def get_best_song_match(artist, song_title, songs):
    """신뢰도 0.8 이상인 최상위 후보만 자동 매칭으로 반환"""
    matches = find_song_matches(artist, song_title, songs)
    if not matches or matches[0]['confidence'] < AUTO_MATCH_THRESHOLD:
        return None
    best = matches[0]
    return {
        'song_id': best['song_id'],
        'title': best['title'],
        'artist': best['artist'],
        'confidence': best['confidence'],
    }
