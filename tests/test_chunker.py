"""TextChunker 청킹 규칙 테스트."""

import pytest

from docembed.embedding.chunker import TextChunker


def _sentences(count):
    # 각 문장 29자 → 8 토큰
    return [f"Sentence number {i:02d} ends here." for i in range(count)]


class TestChunkText:
    """문장 보존 / 문자 모드 청킹"""

    @pytest.mark.parametrize("text", ["", "   ", "\n\t  \n"])
    def test_blank_text_returns_no_chunks(self, text):
        """빈 텍스트 / 공백만 있는 텍스트는 빈 리스트."""
        assert TextChunker().chunk_text(text) == []

    def test_short_text_single_chunk(self):
        """세 문장짜리 짧은 텍스트는 문장을 그대로 담은 청크 1개."""
        chunker = TextChunker()
        text = "Alpha launched the pilot. Beta signed the renewal! Is gamma next?"

        chunks = chunker.chunk_text(text, chunk_size=512, chunk_overlap=50)

        assert len(chunks) == 1
        assert chunks[0].content == text
        assert chunks[0].tokens == chunker.estimate_tokens(text)

    def test_chunks_respect_size_and_overlap(self):
        """청크는 size + overlap 이내, 연속 청크는 끝 문장을 공유."""
        chunker = TextChunker(chunk_size=40, chunk_overlap=10)
        sentences = _sentences(20)

        chunks = chunker.chunk_text(" ".join(sentences))

        assert len(chunks) > 1
        for chunk in chunks:
            assert chunk.tokens <= 40 + 10

        for prev, nxt in zip(chunks, chunks[1:]):
            last_sentence = chunker.split_into_sentences(prev.content)[-1]
            assert nxt.content.startswith(last_sentence)

    def test_every_sentence_is_covered(self):
        """모든 문장이 적어도 하나의 청크에 포함."""
        chunker = TextChunker(chunk_size=40, chunk_overlap=10)
        sentences = _sentences(20)

        chunks = chunker.chunk_text(" ".join(sentences))

        for sentence in sentences:
            assert any(sentence in chunk.content for chunk in chunks)

    def test_zero_overlap_has_no_shared_sentences(self):
        """overlap 0이면 문장이 중복되지 않음."""
        chunker = TextChunker(chunk_size=40, chunk_overlap=0)

        chunks = chunker.chunk_text(" ".join(_sentences(12)))
        seen = [s for c in chunks for s in chunker.split_into_sentences(c.content)]

        assert seen == _sentences(12)

    def test_oversized_sentence_kept_whole(self):
        """chunk_size보다 긴 단일 문장은 자르지 않음."""
        chunker = TextChunker(chunk_size=5, chunk_overlap=0)
        long_sentence = "word " * 40 + "end."

        chunks = chunker.chunk_text(long_sentence)

        assert len(chunks) == 1
        assert chunks[0].content == long_sentence.strip()

    def test_character_mode_windows(self):
        """문자 모드: size*4 윈도우, (size-overlap)*4 간격."""
        chunker = TextChunker()
        text = "abcdefghij" * 10

        chunks = chunker.chunk_text(text, chunk_size=5, chunk_overlap=1, preserve_sentences=False)

        assert len(chunks) == 6
        assert [len(c.content) for c in chunks] == [20, 20, 20, 20, 20, 20]
        assert chunks[0].content == text[0:20]
        assert chunks[1].content == text[16:36]
        assert chunks[-1].content == text[80:100]


class TestSentencesAndOverlap:

    def test_split_keeps_terminators(self):
        """종결 부호는 앞 문장에 포함, 남은 꼬리는 마지막 문장."""
        chunker = TextChunker()

        sentences = chunker.split_into_sentences("One. Two!  Three? tail without stop")

        assert sentences == ["One.", "Two!", "Three?", "tail without stop"]

    def test_overlap_sentences_within_budget(self):
        """끝에서부터 overlap 토큰 이내의 문장만 원래 순서로 반환."""
        chunker = TextChunker()
        sentences = _sentences(4)

        assert chunker.get_overlap_sentences(sentences, 16) == sentences[2:]
        assert chunker.get_overlap_sentences(sentences, 10) == sentences[3:]
        assert chunker.get_overlap_sentences(sentences, 7) == []

    def test_estimate_tokens_is_monotonic(self):
        """긴 텍스트의 추정 토큰 수는 짧은 텍스트 이상."""
        texts = ["", "a", "abcd", "abcde", "abcdefgh" * 10]
        tokens = [TextChunker.estimate_tokens(t) for t in texts]

        assert tokens == sorted(tokens)
        assert tokens[:4] == [0, 1, 1, 2]


class TestTabular:

    def test_empty_rows(self):
        assert TextChunker().chunk_csv_data([]) == []

    def test_rows_grouped_by_size(self):
        """행 JSON 길이 기준으로 묶음 (10행, size 30 → 5행씩 2청크)."""
        chunker = TextChunker()
        rows = [{"id": i, "name": f"row-{i}"} for i in range(10)]

        chunks = chunker.chunk_csv_data(rows, chunk_size=30)

        assert len(chunks) == 2
        assert [c.metadata for c in chunks] == [
            {"rowCount": 5, "type": "csv"},
            {"rowCount": 5, "type": "csv"},
        ]
        assert chunks[0].content.splitlines()[0] == "id: 0, name: row-0"
        assert chunks[1].content.splitlines()[-1] == "id: 9, name: row-9"

    def test_format_rows_uses_first_row_headers(self):
        """헤더는 첫 행 기준, 없는 값은 빈 문자열."""
        rows = [
            {"account": "Acme", "stage": "won"},
            {"account": "Globex", "extra": 1},
        ]

        text = TextChunker.format_csv_rows(rows)

        assert text == "account: Acme, stage: won\naccount: Globex, stage: "


class TestPdfMetadata:

    def test_title_and_page(self):
        """첫 비어있지 않은 줄(최대 100자)이 제목 후보."""
        text = "\n\n" + "Quarterly Review " * 10 + "\nbody line"

        metadata = TextChunker.extract_pdf_metadata(text, page_number=3)

        assert metadata["type"] == "pdf"
        assert metadata["pageNumber"] == 3
        assert metadata["potentialTitle"] == ("Quarterly Review " * 10)[:100]

    def test_blank_text_has_no_title(self):
        assert TextChunker.extract_pdf_metadata("  \n ") == {"type": "pdf"}
