"""
Embedding Module - 문서 임베딩 파이프라인
==========================================

주요 컴포넌트:
  - chunker.py         : 텍스트 / 표 데이터 → 겹치는 청크 분할
  - embedder.py        : 텍스트 → 벡터 변환 (OpenAI, 배치 + 재시도)
  - embedding_worker.py: 잡 큐 → 청킹 → 임베딩 → 벡터 저장
  - rag_search.py      : 벡터 유사도 검색 + 관련 엔티티 enrichment
"""
