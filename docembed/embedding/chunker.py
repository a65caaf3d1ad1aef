"""
Text Chunker - 텍스트 / 표 데이터 청킹
=======================================

원문을 임베딩에 적합한 크기의 겹치는(overlap) 청크로 분할합니다.

분할 전략:
  1. 문장 보존 모드 (기본): 문장 단위로 누적하다가 chunk_size 초과 시 청크를 닫고,
     직전 청크의 끝 문장들(overlap 토큰 이내)로 다음 청크를 시작
  2. 문자 모드: chunk_size*4 문자 고정 윈도우 + overlap*4 문자 겹침
  3. CSV/Excel: 행 단위로 묶어서 "필드: 값, 필드: 값" 텍스트로 변환

토큰 수는 실제 토크나이저 대신 ceil(문자 수 / 4)로 근사합니다.
"""

import json
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Optional

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 512
DEFAULT_CHUNK_OVERLAP = 50
CHARS_PER_TOKEN = 4


@dataclass
class TextChunk:
    """단일 텍스트 청크"""
    content: str        # 임베딩 대상 텍스트
    tokens: int         # 추정 토큰 수
    metadata: dict[str, Any] = field(default_factory=dict)


class TextChunker:
    """
    텍스트 → TextChunk 리스트 분할기

    생성자 파라미터로 기본값 설정:
      chunk_size: 청크 목표 토큰 수 (기본 512)
      chunk_overlap: 청크 간 겹침 토큰 수 (기본 50)
    """

    # 문장 종결 부호(. ! ?) + 공백/개행
    SENTENCE_END_RE = re.compile(r'[.!?]+\s+')

    def __init__(
        self,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
    ):
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap

    @staticmethod
    def estimate_tokens(text: str) -> int:
        """토큰 수 근사 (영문 기준 평균 4 chars/token)"""
        return math.ceil(len(text) / CHARS_PER_TOKEN)

    def chunk_text(
        self,
        text: str,
        chunk_size: Optional[int] = None,
        chunk_overlap: Optional[int] = None,
        preserve_sentences: bool = True,
    ) -> list[TextChunk]:
        """
        텍스트를 겹치는 청크 리스트로 분할

        Args:
            text: 원문 텍스트
            chunk_size: 청크 목표 토큰 수
            chunk_overlap: 겹침 토큰 수
            preserve_sentences: 문장 경계 보존 여부

        Returns:
            TextChunk 리스트 (순서 보장, 빈 입력이면 빈 리스트)
        """
        if not text or not text.strip():
            return []

        size = self.chunk_size if chunk_size is None else chunk_size
        overlap = self.chunk_overlap if chunk_overlap is None else chunk_overlap

        if preserve_sentences:
            return self._chunk_by_sentences(text, size, overlap)
        return self._chunk_by_characters(text, size, overlap)

    # ------------------------------------------------------------------
    # 문장 / 문자 분할
    # ------------------------------------------------------------------

    def _chunk_by_sentences(
        self,
        text: str,
        chunk_size: int,
        chunk_overlap: int,
    ) -> list[TextChunk]:
        sentences = self.split_into_sentences(text)
        chunks: list[TextChunk] = []
        current: list[str] = []
        current_tokens = 0

        for sentence in sentences:
            sentence_tokens = self.estimate_tokens(sentence)

            # 초과 시 현재 청크를 닫고 overlap 문장으로 다음 청크 시작
            if current and current_tokens + sentence_tokens > chunk_size:
                chunks.append(self._make_chunk(' '.join(current)))

                overlap = self.get_overlap_sentences(current, chunk_overlap)
                # overlap이 직전 청크 전체면 청크가 계속 커지므로 첫 문장은 제외
                if len(overlap) == len(current):
                    overlap = overlap[1:]
                current = overlap
                current_tokens = self.estimate_tokens(' '.join(current)) if current else 0

            # chunk_size보다 긴 단일 문장도 자르지 않고 그대로 포함
            current.append(sentence)
            current_tokens += sentence_tokens

        if current:
            chunks.append(self._make_chunk(' '.join(current)))

        return chunks

    def _chunk_by_characters(
        self,
        text: str,
        chunk_size: int,
        chunk_overlap: int,
    ) -> list[TextChunk]:
        chunk_chars = max(chunk_size * CHARS_PER_TOKEN, 1)
        overlap_chars = chunk_overlap * CHARS_PER_TOKEN
        step = max(chunk_chars - overlap_chars, 1)

        chunks: list[TextChunk] = []
        start = 0
        while start < len(text):
            end = start + chunk_chars
            window = text[start:end]
            if window.strip():
                chunks.append(self._make_chunk(window))
            if end >= len(text):
                break
            start += step

        return chunks

    def split_into_sentences(self, text: str) -> list[str]:
        """문장 종결 부호 + 공백 기준 문장 분리 (종결 부호는 앞 문장에 포함)"""
        sentences: list[str] = []
        last_index = 0

        for m in self.SENTENCE_END_RE.finditer(text):
            sentence = text[last_index:m.end()].strip()
            if sentence:
                sentences.append(sentence)
            last_index = m.end()

        # 남은 텍스트는 마지막 문장으로
        tail = text[last_index:].strip()
        if tail:
            sentences.append(tail)

        return sentences

    def get_overlap_sentences(self, sentences: list[str], overlap_tokens: int) -> list[str]:
        """
        끝에서부터 overlap 토큰 이내에 들어가는 문장들을 원래 순서로 반환
        """
        overlap: list[str] = []
        tokens = 0

        for sentence in reversed(sentences):
            sentence_tokens = self.estimate_tokens(sentence)
            if tokens + sentence_tokens > overlap_tokens:
                break
            overlap.insert(0, sentence)
            tokens += sentence_tokens

        return overlap

    def _make_chunk(self, content: str, metadata: Optional[dict] = None) -> TextChunk:
        return TextChunk(
            content=content,
            tokens=self.estimate_tokens(content),
            metadata=metadata or {},
        )

    # ------------------------------------------------------------------
    # CSV / Excel
    # ------------------------------------------------------------------

    def chunk_csv_data(
        self,
        rows: list[dict[str, Any]],
        chunk_size: Optional[int] = None,
    ) -> list[TextChunk]:
        """
        표 데이터(행 dict 리스트)를 행 단위로 묶어 청크 생성

        행의 JSON 표현 길이로 토큰을 추정하고, 다음 행을 더하면
        chunk_size를 넘는 시점에 청크를 닫습니다.

        Returns:
            TextChunk 리스트 (metadata: {'rowCount': n, 'type': 'csv'})
        """
        if not rows:
            return []

        size = self.chunk_size if chunk_size is None else chunk_size
        chunks: list[TextChunk] = []
        current_rows: list[dict[str, Any]] = []
        current_text = ''

        for row in rows:
            row_text = json.dumps(row, separators=(',', ':'), ensure_ascii=False, default=str)

            if current_rows and self.estimate_tokens(current_text + row_text) > size:
                chunks.append(self._make_csv_chunk(current_rows, current_text))
                current_rows = []
                current_text = ''

            current_rows.append(row)
            current_text += row_text

        if current_rows:
            chunks.append(self._make_csv_chunk(current_rows, current_text))

        return chunks

    def _make_csv_chunk(self, rows: list[dict[str, Any]], raw_text: str) -> TextChunk:
        return TextChunk(
            content=self.format_csv_rows(rows),
            tokens=self.estimate_tokens(raw_text),
            metadata={'rowCount': len(rows), 'type': 'csv'},
        )

    @staticmethod
    def format_csv_rows(rows: list[dict[str, Any]]) -> str:
        """행 리스트 → "필드: 값, 필드: 값" 줄 단위 텍스트 (헤더는 첫 행 기준)"""
        if not rows:
            return ''

        headers = list(rows[0].keys())
        lines = []
        for row in rows:
            fields = []
            for header in headers:
                value = row.get(header)
                fields.append(f"{header}: {'' if value is None else value}")
            lines.append(', '.join(fields))

        return '\n'.join(lines)

    # ------------------------------------------------------------------
    # PDF 메타데이터
    # ------------------------------------------------------------------

    @staticmethod
    def extract_pdf_metadata(text: str, page_number: Optional[int] = None) -> dict[str, Any]:
        """PDF 텍스트에서 페이지 번호 / 제목 후보 추출"""
        metadata: dict[str, Any] = {'type': 'pdf'}

        if page_number is not None:
            metadata['pageNumber'] = page_number

        lines = [line for line in text.split('\n') if line.strip()]
        if lines:
            metadata['potentialTitle'] = lines[0][:100]

        return metadata
