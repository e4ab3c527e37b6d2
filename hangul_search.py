"""
한글 검색 유틸리티
초성 검색, 미완성 글자 부분 매칭, 한영 자판 오타 매칭을 지원합니다.
"""
import re

# 한글 초성 배열
CHOSUNG = [
    'ㄱ', 'ㄲ', 'ㄴ', 'ㄷ', 'ㄸ', 'ㄹ', 'ㅁ', 'ㅂ', 'ㅃ', 'ㅅ',
    'ㅆ', 'ㅇ', 'ㅈ', 'ㅉ', 'ㅊ', 'ㅋ', 'ㅌ', 'ㅍ', 'ㅎ'
]

# 한글 중성 배열
JUNGSUNG = [
    'ㅏ', 'ㅐ', 'ㅑ', 'ㅒ', 'ㅓ', 'ㅔ', 'ㅕ', 'ㅖ', 'ㅗ', 'ㅘ',
    'ㅙ', 'ㅚ', 'ㅛ', 'ㅜ', 'ㅝ', 'ㅞ', 'ㅟ', 'ㅠ', 'ㅡ', 'ㅢ', 'ㅣ'
]

# 한글 종성 배열 (첫 항목은 종성 없음)
JONGSUNG = [
    '', 'ㄱ', 'ㄲ', 'ㄳ', 'ㄴ', 'ㄵ', 'ㄶ', 'ㄷ', 'ㄹ', 'ㄺ',
    'ㄻ', 'ㄼ', 'ㄽ', 'ㄾ', 'ㄿ', 'ㅀ', 'ㅁ', 'ㅂ', 'ㅄ', 'ㅅ',
    'ㅆ', 'ㅇ', 'ㅈ', 'ㅊ', 'ㅋ', 'ㅌ', 'ㅍ', 'ㅎ'
]

HANGUL_BASE = 0xAC00
HANGUL_LAST = 0xD7A3

# 키보드 입력 순서상 먼저 치는 중성 -> 이어서 조합될 수 있는 중성
JUNGSUNG_KEYBOARD_MAP = {
    'ㅗ': ('ㅘ', 'ㅙ', 'ㅚ'),  # ㅗ+ㅏ, ㅗ+ㅐ, ㅗ+ㅣ
    'ㅜ': ('ㅝ', 'ㅞ', 'ㅟ'),  # ㅜ+ㅓ, ㅜ+ㅔ, ㅜ+ㅣ
    'ㅡ': ('ㅢ',),             # ㅡ+ㅣ
}

# 두벌식 자판 매핑 (한글 자모 -> 영문 키)
KOR_TO_ENG_MAP = {
    # 자음
    'ㄱ': 'r', 'ㄲ': 'R', 'ㄴ': 's', 'ㄷ': 'e', 'ㄸ': 'E',
    'ㄹ': 'f', 'ㅁ': 'a', 'ㅂ': 'q', 'ㅃ': 'Q', 'ㅅ': 't',
    'ㅆ': 'T', 'ㅇ': 'd', 'ㅈ': 'w', 'ㅉ': 'W', 'ㅊ': 'c',
    'ㅋ': 'z', 'ㅌ': 'x', 'ㅍ': 'v', 'ㅎ': 'g',
    # 겹받침
    'ㄳ': 'rt', 'ㄵ': 'sw', 'ㄶ': 'sg', 'ㄺ': 'fr', 'ㄻ': 'fa',
    'ㄼ': 'fq', 'ㄽ': 'ft', 'ㄾ': 'fx', 'ㄿ': 'fv', 'ㅀ': 'fg',
    'ㅄ': 'qt',
    # 모음
    'ㅏ': 'k', 'ㅐ': 'o', 'ㅑ': 'i', 'ㅒ': 'O', 'ㅓ': 'j',
    'ㅔ': 'p', 'ㅕ': 'u', 'ㅖ': 'P', 'ㅗ': 'h', 'ㅘ': 'hk',
    'ㅙ': 'ho', 'ㅚ': 'hl', 'ㅛ': 'y', 'ㅜ': 'n', 'ㅝ': 'nj',
    'ㅞ': 'np', 'ㅟ': 'nl', 'ㅠ': 'b', 'ㅡ': 'm', 'ㅢ': 'ml',
    'ㅣ': 'l'
}

_WHITESPACE_RE = re.compile(r'\s+')
_CHOSUNG_ONLY_RE = re.compile(r'^[ㄱ-ㅎ]+$')
_HANGUL_ANY_RE = re.compile(r'[ㄱ-ㅎㅏ-ㅣ가-힣]')
_LATIN_ONLY_RE = re.compile(r'^[A-Za-z]+$')


def decompose_hangul(char):
    """완성형 한글 한 글자를 (초성, 중성, 종성)으로 분해. 한글이 아니면 None"""
    if not char:
        return None
    code = ord(char[0])
    if code < HANGUL_BASE or code > HANGUL_LAST:
        return None

    base = code - HANGUL_BASE
    return (
        CHOSUNG[base // (21 * 28)],
        JUNGSUNG[(base % (21 * 28)) // 28],
        JONGSUNG[base % 28],
    )


def extract_chosung(text):
    """텍스트에서 초성만 추출 (한글이 아닌 글자는 그대로 유지)"""
    result = []
    for char in text:
        decomposed = decompose_hangul(char)
        result.append(decomposed[0] if decomposed else char)
    return ''.join(result)


def extract_full_decomposed(text):
    """텍스트를 초성+중성+종성 자모열로 변환"""
    result = []
    for char in text:
        decomposed = decompose_hangul(char)
        result.append(''.join(decomposed) if decomposed else char)
    return ''.join(result)


def to_keyboard_keys(text):
    """한글 텍스트를 두벌식 자판에서 입력되는 영문 키 시퀀스로 변환"""
    result = []
    for char in text:
        decomposed = decompose_hangul(char)
        if decomposed:
            result.extend(KOR_TO_ENG_MAP.get(jamo, '') for jamo in decomposed)
        else:
            result.append(KOR_TO_ENG_MAP.get(char, char))
    return ''.join(result)


def normalize_text(text):
    """띄어쓰기를 제거하고 소문자로 변환"""
    return _WHITESPACE_RE.sub('', text or '').lower()


def is_chosung_only(text):
    return bool(_CHOSUNG_ONLY_RE.match(text))


def is_jungsung_match(search_jungsung, target_jungsung):
    """검색 중성이 타겟 중성과 매칭되는지 확인 (키보드 입력 순서 기반)"""
    if search_jungsung == target_jungsung:
        return True
    return target_jungsung in JUNGSUNG_KEYBOARD_MAP.get(search_jungsung, ())


def _chars_match(search_char, target_char):
    if search_char == target_char:
        return True

    target_decomposed = decompose_hangul(target_char)

    # 초성만 입력된 글자
    if search_char in CHOSUNG:
        return bool(target_decomposed) and target_decomposed[0] == search_char

    search_decomposed = decompose_hangul(search_char)
    if not search_decomposed or not target_decomposed:
        # 한글이 아닌 경우 완전 일치만 허용
        return False

    search_cho, search_jung, search_jong = search_decomposed
    target_cho, target_jung, target_jong = target_decomposed

    if search_cho != target_cho:
        return False
    if not is_jungsung_match(search_jung, target_jung):
        return False
    # 종성이 없는 검색 글자는 입력 중인 글자로 간주 ("악도" -> "악동")
    if search_jong and search_jong != target_jong:
        return False
    return True


def is_partial_korean_match(search_term, target_text):
    """
    부분 글자 매칭 (미완성 글자 및 초성 지원)
    검색어의 각 글자가 타겟의 연속된 글자와 앞부분부터 매칭되는지 확인
    """
    if len(search_term) > len(target_text):
        return False

    for start in range(len(target_text) - len(search_term) + 1):
        if all(_chars_match(s, target_text[start + offset])
               for offset, s in enumerate(search_term)):
            return True
    return False


def is_korean_match(search_term, target_text):
    """
    한글 검색어가 타겟 텍스트와 매칭되는지 확인
    - 띄어쓰기 무시
    - 초성/중성 부분 매칭 지원
    """
    if not search_term or not target_text:
        return False

    normalized_search = normalize_text(search_term)
    normalized_target = normalize_text(target_text)
    if not normalized_search:
        return False

    if normalized_search in normalized_target:
        return True

    if is_chosung_only(normalized_search):
        return normalized_search in extract_chosung(normalized_target)

    # 초성과 완성형이 섞인 경우 ("악ㄷ") 또는 완성형만 있는 경우
    return is_partial_korean_match(normalized_search, normalized_target)


def is_english_match(search_term, target_text):
    """영문/숫자 검색 (띄어쓰기 무시)"""
    if not search_term or not target_text:
        return False
    normalized_search = normalize_text(search_term)
    return bool(normalized_search) and normalized_search in normalize_text(target_text)


def is_keyboard_layout_match(search_term, target_text):
    """한글 자판 상태를 잊고 영문으로 입력한 검색어 매칭 (예: 'dkdi' -> '아야')"""
    if not search_term or not target_text:
        return False
    compact = _WHITESPACE_RE.sub('', search_term)
    if len(compact) < 2 or not _LATIN_ONLY_RE.match(compact):
        return False
    if not _HANGUL_ANY_RE.search(target_text):
        return False
    keys = to_keyboard_keys(_WHITESPACE_RE.sub('', target_text))
    # 쌍자음/일부 모음은 Shift 조합이라 대소문자를 구분해서 먼저 비교
    return compact in keys or compact.lower() in keys.lower()


def is_text_match(search_term, target_text):
    """통합 검색 함수"""
    if not search_term or not target_text:
        return False

    if _HANGUL_ANY_RE.search(search_term):
        return is_korean_match(search_term, target_text)

    return (is_english_match(search_term, target_text)
            or is_keyboard_layout_match(search_term, target_text))


SEARCHABLE_FIELDS = ('title', 'artist', 'title_alias', 'artist_alias')


def song_matches_query(song, query):
    """곡 딕셔너리의 제목/아티스트/별칭/태그 중 하나라도 검색어와 매칭되는지 확인"""
    if not query or not query.strip():
        return True
    for field in SEARCHABLE_FIELDS:
        value = song.get(field)
        if value and is_text_match(query, value):
            return True
    for tag in (song.get('search_tags') or []) + (song.get('tags') or []):
        if tag and is_text_match(query, tag):
            return True
    return False
