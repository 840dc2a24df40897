"""
本文件用于文本归一化：特殊空白替换、通讯社署名后缀剥离、乱码修复与空白折叠，
以及在结构化正文提取失败时使用的 HTML 粗提取。
主要函数/类:
- `TextNormalizer`: 规则可枚举、可单独测试的归一化器
- `normalize_text`: 使用默认规则归一化文本
- `strip_html_to_text`: 去除噪音区块与全部标签，返回纯文本
"""

from __future__ import annotations

import html as html_lib
import re
from typing import Iterable, Optional, Sequence, Tuple

# 不间断空格 / 零宽字符等，统一替换为普通空格
WHITESPACE_VARIANTS: Sequence[str] = (
    "\u00a0",  # no-break space
    "\u2007",  # figure space
    "\u202f",  # narrow no-break space
    "\u200b",  # zero width space
    "\u200c",  # zero width non-joiner
    "\u200d",  # zero width joiner
    "\u2060",  # word joiner
    "\ufeff",  # BOM
    "\u3000",  # ideographic space
)

WIRE_SUFFIXES: Sequence[str] = (
    "The Associated Press",
    "AP News",
    "Reuters",
    "Bloomberg",
)

# UTF-8 续字节 (0x80-0xBF) 被按 cp1252/latin-1 解码后可能呈现的字符
_CONTINUATION_CHARS = (
    r"\u0080-\u00bf"
    r"\u0152\u0153\u0160\u0161\u0178\u017d\u017e\u0192\u02c6\u02dc"
    r"\u2013\u2014\u2018-\u201a\u201c-\u201e\u2020-\u2022\u2026\u2030\u2039\u203a\u20ac\u2122"
)
# UTF-8 首字节 (0xC2-0xF4) 被误解码后的字符
_LEAD_CHARS = r"\u00c2-\u00f4"

# 典型片段例如 "Ã©"（é）、"â€™"（’）
MOJIBAKE_TRIGGER = re.compile(f"[{_LEAD_CHARS}][{_CONTINUATION_CHARS}]")
_MOJIBAKE_SEGMENT = re.compile(f"[{_LEAD_CHARS}][{_CONTINUATION_CHARS}]+")
_REPAIR_CODECS: Sequence[str] = ("cp1252", "latin-1")
# 还原结果只允许落在这些区间：拉丁补充/扩展、通用标点、货币符号、™
REPAIRED_CHAR_RANGES: Sequence[Tuple[int, int]] = (
    (0x00A0, 0x024F),
    (0x2000, 0x206F),
    (0x20A0, 0x20CF),
    (0x2122, 0x2122),
)


def _is_plausible_repair(text: str) -> bool:
    return all(any(low <= ord(ch) <= high for low, high in REPAIRED_CHAR_RANGES) for ch in text)


NOISE_BLOCK_TAGS: Sequence[str] = ("script", "style", "nav", "header", "footer", "aside")

_WHITESPACE_RUN = re.compile(r"\s+")
_HTML_COMMENT = re.compile(r"<!--.*?-->", re.DOTALL)
_HTML_TAG = re.compile(r"<[^>]+>")
_HTML_TRAILING_PARTIAL_TAG = re.compile(r"<[a-zA-Z/][^>]*$")


def _build_suffix_pattern(suffixes: Iterable[str]) -> re.Pattern:
    names = "|".join(re.escape(s) for s in sorted(suffixes, key=len, reverse=True))
    return re.compile(
        rf"(?:\s*[-|:\u2013\u2014]\s*|\s*\(\s*|\s+|^)\b(?:{names})\s*\)?\s*$",
        re.IGNORECASE,
    )


def collapse_whitespace(text: str) -> str:
    return _WHITESPACE_RUN.sub(" ", text).strip()


class TextNormalizer:
    """
    输入:
    - `suffixes`: 需要从文本末尾剥离的通讯社署名（默认 `WIRE_SUFFIXES`）

    输出:
    - 归一化器实例

    作用:
    - 以固定顺序执行：特殊空白替换 -> 署名后缀剥离 -> 乱码修复 -> 空白折叠；
      纯函数，任何输入都不会抛异常
    """

    def __init__(self, suffixes: Optional[Iterable[str]] = None) -> None:
        self.suffixes = tuple(suffixes or WIRE_SUFFIXES)
        self._suffix_pattern = _build_suffix_pattern(self.suffixes)
        self._whitespace_table = {ord(ch): " " for ch in WHITESPACE_VARIANTS}

    def normalize(self, raw: Optional[str]) -> str:
        if not raw:
            return ""
        text = str(raw)
        text = self.replace_whitespace_variants(text)
        text = self.strip_wire_suffixes(text)
        text = self.repair_mojibake(text)
        return collapse_whitespace(text)

    def replace_whitespace_variants(self, text: str) -> str:
        return text.translate(self._whitespace_table)

    def strip_wire_suffixes(self, text: str) -> str:
        # "... - Reuters (Bloomberg)" 这类叠加署名需要多次剥离
        while True:
            stripped = self._suffix_pattern.sub("", text)
            if stripped == text:
                return text
            text = stripped

    def repair_mojibake(self, text: str) -> str:
        """
        输入:
        - `text`: 可能含有乱码片段的文本

        输出:
        - 修复后的文本；启发式未命中或修复无效时原样返回

        作用:
        - 将被误按 cp1252/latin-1 解码的 UTF-8 片段重新解码，仅替换能成功还原的片段
        """

        if not MOJIBAKE_TRIGGER.search(text):
            return text
        repaired = _MOJIBAKE_SEGMENT.sub(self._repair_segment, text)
        return repaired if repaired != text else text

    @staticmethod
    def _repair_segment(match: re.Match) -> str:
        segment = match.group(0)
        for codec in _REPAIR_CODECS:
            try:
                decoded = segment.encode(codec).decode("utf-8")
            except UnicodeError:
                continue
            # "groß“" 这类正常文本也能凑成合法 UTF-8，解出区间外字符时保留原文
            if _is_plausible_repair(decoded):
                return decoded
        return segment

    @staticmethod
    def strip_html_to_text(html: Optional[str]) -> str:
        """
        输入:
        - `html`: 原始 HTML 文本

        输出:
        - 纯文本（空白已折叠）

        作用:
        - 结构化正文提取结果过短时的兜底方案：整体删除脚本/样式/导航/页眉/页脚/侧栏区块，
          再去除剩余标签并解码 HTML 实体
        """

        if not html:
            return ""
        text = html
        for tag in NOISE_BLOCK_TAGS:
            text = re.sub(rf"<{tag}\b[^>]*>.*?</{tag}\s*>", " ", text, flags=re.IGNORECASE | re.DOTALL)
        text = _HTML_COMMENT.sub(" ", text)
        text = _HTML_TAG.sub(" ", text)
        text = _HTML_TRAILING_PARTIAL_TAG.sub("", text)
        text = html_lib.unescape(text)
        return collapse_whitespace(text)


default_normalizer = TextNormalizer()


def normalize_text(raw: Optional[str]) -> str:
    return default_normalizer.normalize(raw)


def strip_html_to_text(html: Optional[str]) -> str:
    return TextNormalizer.strip_html_to_text(html)
