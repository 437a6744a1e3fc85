from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Pattern, Sequence, Tuple

from _fs import read_source_text, split_lines

from .attributes import parse_inline_attributes, strip_bracket_attributes, ticket_attribute
from .grammars import CommentGrammar

KEY_FORM_PAREN = "paren"
KEY_FORM_ATTRIBUTE = "attribute"
KEY_FORM_BARE = "bare"

_WORD_CHARS = "A-Za-z0-9_"
_LEADING_PUNCT = " \t:-"
_PAREN_RE = re.compile(r"\s*\(\s*([^()\s]+)\s*\)")


@dataclass(frozen=True)
class CommentSpan:
    start: int
    end: int
    body_start: int
    body_end: int


@dataclass(frozen=True)
class KeyMatch:
    key: str
    start: int
    end: int
    form: str
    # Columns of the full written form, e.g. "(KEY)" or "[ticket=KEY]".
    form_start: int
    form_end: int


@dataclass
class MarkerCandidate:
    file_path: Path
    line_number: int
    column: int
    line_text: str
    comment_span: CommentSpan
    signal_word: Optional[str]
    signal_end: int
    segment_end: int
    key_match: Optional[KeyMatch] = None
    inline_attributes: Dict[str, str] = field(default_factory=dict)
    title: str = ""

    @property
    def existing_key(self) -> Optional[str]:
        return self.key_match.key if self.key_match else None

    @property
    def is_mention(self) -> bool:
        return self.signal_word is None

    @property
    def segment(self) -> str:
        return self.line_text[self.signal_end : self.segment_end]


def _earliest_opener(
    line: str, pos: int, grammar: CommentGrammar
) -> Optional[Tuple[int, str, Optional[str]]]:
    best: Optional[Tuple[int, str, Optional[str]]] = None
    for prefix in grammar.line_prefixes:
        idx = line.find(prefix, pos)
        if idx != -1 and (best is None or idx < best[0] or (idx == best[0] and len(prefix) > len(best[1]))):
            best = (idx, prefix, None)
    for opener, closer in grammar.block_pairs:
        idx = line.find(opener, pos)
        if idx != -1 and (best is None or idx < best[0] or (idx == best[0] and len(opener) > len(best[1]))):
            best = (idx, opener, closer)
    return best


def comment_spans(lines: Sequence[str], grammar: CommentGrammar) -> List[List[CommentSpan]]:
    """Comment spans per line, carrying open block comments across lines.

    Block comments do not nest: the first closer ends the block. When a line
    comment and a block comment could both start, the leftmost wins, and on a
    tie the longer delimiter wins (`--[[` over `--`).
    """
    result: List[List[CommentSpan]] = []
    pending_close: Optional[str] = None
    for line in lines:
        spans: List[CommentSpan] = []
        length = len(line)
        pos = 0
        if pending_close is not None:
            idx = line.find(pending_close)
            if idx == -1:
                result.append([CommentSpan(0, length, 0, length)])
                continue
            end = idx + len(pending_close)
            spans.append(CommentSpan(0, end, 0, idx))
            pos = end
            pending_close = None
        while pos < length:
            hit = _earliest_opener(line, pos, grammar)
            if hit is None:
                break
            idx, opener, closer = hit
            body_start = idx + len(opener)
            if closer is None:
                spans.append(CommentSpan(idx, length, body_start, length))
                break
            close_idx = line.find(closer, body_start)
            if close_idx == -1:
                spans.append(CommentSpan(idx, length, body_start, length))
                pending_close = closer
                break
            end = close_idx + len(closer)
            spans.append(CommentSpan(idx, end, body_start, close_idx))
            pos = end
        result.append(spans)
    return result


def compile_signal_pattern(words: Sequence[str]) -> Optional[Pattern[str]]:
    unique = sorted({word.strip() for word in words if word.strip()}, key=lambda w: (-len(w), w))
    if not unique:
        return None
    alternation = "|".join(re.escape(word) for word in unique)
    return re.compile(rf"(?<![{_WORD_CHARS}])({alternation})(?![{_WORD_CHARS}])")


def _key_from_match(match: re.Match[str]) -> Tuple[str, int, int]:
    if match.re.groups and match.group(1) is not None:
        return match.group(1), match.start(1), match.end(1)
    return match.group(0), match.start(0), match.end(0)


class LineScanner:
    """Finds signal-word markers and ticket keys inside comment spans."""

    def __init__(
        self,
        signal_words: Sequence[str],
        ticket_patterns: Sequence[Pattern[str]],
        *,
        enable_mentions: bool = True,
    ):
        self.signal_words = list(signal_words)
        self.signal_re = compile_signal_pattern(signal_words)
        self.ticket_patterns = list(ticket_patterns)
        self.enable_mentions = enable_mentions

    def find_keys(self, line: str, start: int, end: int) -> List[Tuple[str, int, int]]:
        found: Dict[int, Tuple[str, int, int]] = {}
        for pattern in self.ticket_patterns:
            for match in pattern.finditer(line, start, end):
                key, key_start, key_end = _key_from_match(match)
                if key and key_start not in found:
                    found[key_start] = (key, key_start, key_end)
        return [found[pos] for pos in sorted(found)]

    def key_in_segment(self, line: str, start: int, end: int) -> Optional[KeyMatch]:
        """Key written for the marker whose text is line[start:end]."""
        segment = line[start:end]
        attr = ticket_attribute(segment)
        if attr:
            return KeyMatch(
                key=attr.group(1),
                start=start + attr.start(1),
                end=start + attr.end(1),
                form=KEY_FORM_ATTRIBUTE,
                form_start=start + attr.start(),
                form_end=start + attr.end(),
            )
        paren = _PAREN_RE.match(segment)
        if paren:
            for pattern in self.ticket_patterns:
                match = pattern.fullmatch(line, start + paren.start(1), start + paren.end(1))
                if match:
                    key, key_start, key_end = _key_from_match(match)
                    return KeyMatch(
                        key=key,
                        start=key_start,
                        end=key_end,
                        form=KEY_FORM_PAREN,
                        form_start=start + paren.start(),
                        form_end=start + paren.end(),
                    )
        # A bare key only counts as the first token after the signal word.
        lead = start
        while lead < end and line[lead] in _LEADING_PUNCT:
            lead += 1
        for pattern in self.ticket_patterns:
            match = pattern.match(line, lead, end)
            if match and match.end() > lead:
                key, key_start, key_end = _key_from_match(match)
                return KeyMatch(key, key_start, key_end, KEY_FORM_BARE, match.start(), match.end())
        return None

    def extract_key(self, line: str) -> Optional[str]:
        attr = ticket_attribute(line)
        if attr:
            return attr.group(1)
        keys = self.find_keys(line, 0, len(line))
        return keys[0][0] if keys else None

    def _title(self, candidate: MarkerCandidate) -> str:
        text = candidate.segment
        match = candidate.key_match
        if match is not None:
            rel_start = match.form_start - candidate.signal_end
            rel_end = match.form_end - candidate.signal_end
            text = text[:rel_start] + text[rel_end:]
        text = strip_bracket_attributes(text).strip().lstrip(":-").strip()
        return " ".join(text.split())

    def scan_text(self, lines: Sequence[str], grammar: CommentGrammar, file_path: Path) -> List[MarkerCandidate]:
        candidates: List[MarkerCandidate] = []
        for line_idx, spans in enumerate(comment_spans(lines, grammar)):
            line = lines[line_idx]
            line_candidates: List[MarkerCandidate] = []
            for span in spans:
                signals = list(self.signal_re.finditer(line, span.body_start, span.body_end)) if self.signal_re else []
                for pos, signal in enumerate(signals):
                    segment_end = signals[pos + 1].start() if pos + 1 < len(signals) else span.body_end
                    candidate = MarkerCandidate(
                        file_path=file_path,
                        line_number=line_idx + 1,
                        column=signal.start(),
                        line_text=line,
                        comment_span=span,
                        signal_word=signal.group(1),
                        signal_end=signal.end(),
                        segment_end=segment_end,
                    )
                    candidate.key_match = self.key_in_segment(line, signal.end(), segment_end)
                    candidate.inline_attributes = parse_inline_attributes(candidate.segment)
                    candidate.title = self._title(candidate)
                    line_candidates.append(candidate)
                if not self.enable_mentions:
                    continue
                mention_end = signals[0].start() if signals else span.body_end
                for key, key_start, key_end in self.find_keys(line, span.body_start, mention_end):
                    line_candidates.append(
                        MarkerCandidate(
                            file_path=file_path,
                            line_number=line_idx + 1,
                            column=key_start,
                            line_text=line,
                            comment_span=span,
                            signal_word=None,
                            signal_end=key_start,
                            segment_end=mention_end,
                            key_match=KeyMatch(key, key_start, key_end, KEY_FORM_BARE, key_start, key_end),
                        )
                    )
            line_candidates.sort(key=lambda item: item.column)
            candidates.extend(line_candidates)
        return candidates

    def scan_file(self, path: Path, grammar: CommentGrammar) -> List[MarkerCandidate]:
        text = read_source_text(path)
        return self.scan_text([content for content, _ in split_lines(text)], grammar, path)
