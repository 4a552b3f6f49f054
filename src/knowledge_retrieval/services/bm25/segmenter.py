"""
Language-aware tokenizer for the BM25 index.

CJK text is segmented with jieba when enabled; otherwise a regex
fallback produces whole short CJK runs, 2/3-grams of longer runs,
lowercased Latin words and multi-digit numbers. Stop words and
low-signal tokens are removed in both paths.
"""

import re
import unicodedata
from collections import Counter
from typing import Dict, Iterable, List, Literal, Optional, Tuple

import jieba

from knowledge_retrieval.config import get_settings
from knowledge_retrieval.utils.logging import get_logger

logger = get_logger("bm25.segmenter")

SegmentMode = Literal["default", "search", "all"]
QueryType = Literal["question", "keyword", "phrase"]

STOP_WORDS = frozenset(
    [
        # Chinese
        "的", "了", "和", "是", "就", "都", "而", "及", "与", "或",
        "这", "那", "有", "在", "被", "为", "上", "下", "中", "之",
        "我", "你", "他", "她", "它", "们", "自己", "什么", "怎么", "如何",
        "可以", "可能", "能够", "应该", "必须", "需要", "一个", "一些",
        "这个", "那个", "这些", "那些", "这里", "那里", "这样", "那样",
        "不", "没", "没有", "不是", "还", "也", "又", "但", "但是",
        "然而", "因为", "所以", "如果", "虽然", "尽管", "或者", "并且",
        "以及", "等等", "比如", "例如", "即", "则", "才", "已经", "曾经",
        "正在", "将要", "会", "要", "想", "能", "得", "着", "过", "地",
        # English
        "the", "a", "an", "and", "or", "but", "is", "are", "was", "were",
        "be", "been", "being", "have", "has", "had", "do", "does", "did",
        "will", "would", "could", "should", "may", "might", "must", "shall",
        "to", "of", "in", "for", "on", "with", "at", "by", "from", "as",
        "into", "through", "during", "before", "after", "above", "below",
        "between", "under", "again", "further", "then", "once", "here",
        "there", "when", "where", "why", "how", "all", "each", "few",
        "more", "most", "other", "some", "such", "no", "not", "only",
        "own", "same", "so", "than", "too", "very", "s", "t", "can",
        "just", "don", "now", "i", "me", "my", "you", "your", "he",
        "him", "his", "she", "her", "it", "its", "we", "our", "they",
        "them", "their", "what", "which", "who", "whom", "this", "that",
        "these", "those", "am", "if", "because", "about", "while",
    ]
)

_SYNONYMS: Dict[str, List[str]] = {
    "人工智能": ["AI", "机器学习", "深度学习"],
    "AI": ["人工智能", "机器学习"],
    "机器学习": ["ML", "人工智能", "深度学习"],
    "数据库": ["DB", "存储", "数据存储"],
    "服务器": ["server", "主机", "云服务器"],
    "用户": ["用户端", "客户", "使用者"],
    "接口": ["API", "端点", "服务接口"],
    "API": ["接口", "服务端点"],
    "配置": ["设置", "设定", "配置项"],
    "部署": ["发布", "上线", "部署上线"],
    "知识库": ["知识仓库", "knowledge base", "KB"],
    "工作流": ["流程", "workflow", "自动化流程"],
    "向量": ["vector", "嵌入", "embedding"],
    "搜索": ["查询", "检索", "查找"],
    "文档": ["文件", "资料", "document"],
}

DOMAIN_TERMS = [
    "知识库", "向量搜索", "语义搜索", "混合检索",
    "工作流", "自动化", "节点", "触发器",
    "API", "Embedding", "LLM", "RAG",
    "分块", "分词", "索引", "重排序",
]

_CJK_RUN = re.compile(r"[一-龥]+")
_LATIN_WORD = re.compile(r"[a-zA-Z]+")
_DIGIT_RUN = re.compile(r"\d+")

_QUERY_PUNCTUATION = re.compile(r"[？?！!。.，,、;；:：\"'“”‘’【】\[\]（）()]")
_WHITESPACE = re.compile(r"\s+")
_ZH_QUESTION = re.compile(r"^(什么|怎么|如何|为什么|哪里|谁|何时|是否|能否|可以|是不是)")
_EN_QUESTION = re.compile(r"^(what|how|why|where|when|who|which|can|is|are|do|does)\b", re.IGNORECASE)


def fallback_segment(text: str) -> List[str]:
    """Regex tokenizer used when jieba is disabled."""
    words: List[str] = []

    for match in _CJK_RUN.finditer(text):
        run = match.group()
        if len(run) <= 4:
            words.append(run)
            continue
        for i in range(len(run)):
            if i + 2 <= len(run):
                words.append(run[i : i + 2])
            if i + 3 <= len(run):
                words.append(run[i : i + 3])

    words.extend(m.group().lower() for m in _LATIN_WORD.finditer(text))
    words.extend(m.group() for m in _DIGIT_RUN.finditer(text) if len(m.group()) >= 2)
    return words


def _is_low_signal(word: str) -> bool:
    """Whitespace/punctuation only, or a single digit once those are stripped."""
    core = "".join(
        ch
        for ch in word
        if not ch.isspace() and not unicodedata.category(ch).startswith(("P", "S"))
    )
    if not core:
        return True
    return core.isdigit() and len(core) < 2


def _jieba_cut(text: str, mode: SegmentMode) -> List[str]:
    if mode == "search":
        return list(jieba.cut_for_search(text, HMM=True))
    if mode == "all":
        return list(jieba.cut(text, cut_all=True))
    return list(jieba.cut(text, HMM=True))


def segment(
    text: str,
    mode: SegmentMode = "search",
    remove_stop_words: bool = True,
    lowercase: bool = True,
    min_length: int = 1,
    use_jieba: Optional[bool] = None,
) -> List[str]:
    """Split text into index terms."""
    processed = (text or "").strip()
    if not processed:
        return []
    if lowercase:
        processed = processed.lower()

    if use_jieba is None:
        use_jieba = get_settings().bm25.use_jieba
    words = _jieba_cut(processed, mode) if use_jieba else fallback_segment(processed)

    result: List[str] = []
    for word in words:
        word = word.strip()
        if not word or len(word) < min_length:
            continue
        if _is_low_signal(word):
            continue
        if remove_stop_words and word.lower() in STOP_WORDS:
            continue
        result.append(word)
    return result


def add_word(word: str, freq: Optional[int] = None, tag: Optional[str] = None) -> None:
    """Register a custom dictionary word with jieba."""
    jieba.add_word(word, freq=freq, tag=tag)


def load_domain_terms() -> None:
    for term in DOMAIN_TERMS:
        jieba.add_word(term, freq=1000)
    logger.info(f"Loaded {len(DOMAIN_TERMS)} domain terms into jieba")


def extract_keywords(text: str, top_k: int = 10, use_jieba: Optional[bool] = None) -> List[Tuple[str, float]]:
    """Top terms by frequency, scored as freq / total terms."""
    words = segment(text, use_jieba=use_jieba)
    if not words:
        return []
    counts = Counter(words)
    return [(word, freq / len(words)) for word, freq in counts.most_common(top_k)]


def get_synonyms(word: str) -> List[str]:
    return list(_SYNONYMS.get(word) or _SYNONYMS.get(word.lower()) or [])


def expand_with_synonyms(words: Iterable[str]) -> List[str]:
    """Words followed by their lowercased synonyms, de-duplicated in order."""
    expanded: Dict[str, None] = {}
    words = list(words)
    for word in words:
        expanded[word] = None
    for word in words:
        for synonym in get_synonyms(word):
            expanded[synonym.lower()] = None
    return list(expanded)


def add_synonym(word: str, synonyms: Iterable[str]) -> None:
    existing = _SYNONYMS.get(word, [])
    _SYNONYMS[word] = list(dict.fromkeys([*existing, *synonyms]))


def normalize_query(query: str) -> str:
    normalized = _QUERY_PUNCTUATION.sub(" ", (query or "").strip())
    return _WHITESPACE.sub(" ", normalized).strip()


def analyze_query_intent(query: str, use_jieba: Optional[bool] = None) -> Dict[str, object]:
    """
    Classify a query and extract its keywords.

    Returns:
        {"keywords", "expanded_keywords", "query_type"} where query_type is
        "question" (interrogative opener or trailing "?"), "phrase" (three
        or more keywords) or "keyword".
    """
    normalized = normalize_query(query)
    keywords = segment(normalized, use_jieba=use_jieba)
    expanded = expand_with_synonyms(keywords)

    query_type: QueryType = "keyword"
    stripped = (query or "").strip()
    if (
        _ZH_QUESTION.match(normalized)
        or _EN_QUESTION.match(normalized)
        or stripped.endswith("?")
        or stripped.endswith("？")
    ):
        query_type = "question"
    elif len(keywords) >= 3:
        query_type = "phrase"

    return {"keywords": keywords, "expanded_keywords": expanded, "query_type": query_type}
