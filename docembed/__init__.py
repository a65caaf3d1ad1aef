"""
docembed - Document Embedding & Semantic Retrieval Pipeline
============================================================

문서/텍스트 → 청크 → 벡터 임베딩 → pgvector 저장 → 유사도 검색

Redis 잡 큐로 요청 처리와 임베딩 작업을 분리합니다.
"""

__version__ = "0.1.0"
