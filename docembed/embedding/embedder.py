"""
Embedding Client - 텍스트 → 벡터 변환 (OpenAI Embeddings API)
==============================================================

기능:
  - 단건 임베딩 (generate_embedding)
  - 배치 임베딩 (generate_embeddings_batch): 최대 2048개 단위 분할,
    배치 응답을 index 기준으로 재정렬, 배치 사이 쓰로틀링 딜레이
  - 재시도 임베딩 (generate_embedding_with_retry): 지수 백오프 1s, 2s, 4s ...

환경변수:
  OPENAI_API_KEY        : OpenAI API 키 (필수, 없으면 생성 시 ConfigurationError)
  EMBEDDING_MODEL       : 모델명 (기본: text-embedding-3-small)
  EMBEDDING_DIMENSIONS  : 벡터 차원 (기본: 1536)
  EMBED_MAX_BATCH_SIZE  : 호출당 최대 입력 수 (기본: 2048)
  EMBED_BATCH_DELAY_MS  : 배치 간 딜레이 (기본: 100ms)
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Optional

from openai import AsyncOpenAI

from docembed.common.errors import ConfigurationError, ProviderError, ValidationError
from docembed.common.pipeline_config import OpenAIConfig, get_config

logger = logging.getLogger(__name__)


@dataclass
class EmbeddingResult:
    """단건 임베딩 결과"""
    embedding: list[float]
    tokens: int


@dataclass
class BatchEmbeddingResult:
    """
    배치 임베딩 결과

    embeddings[i]는 입력 texts[indices[i]]에 대응 (빈 텍스트는 제외됨)
    """
    embeddings: list[list[float]]
    total_tokens: int
    costs: float
    indices: list[int] = field(default_factory=list)


class EmbeddingClient:
    """
    OpenAI Embeddings API 래퍼

    필수: OPENAI_API_KEY 환경변수 또는 api_key 파라미터
    (테스트에서는 client 파라미터로 호환 객체 주입 가능)
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model_name: Optional[str] = None,
        dimensions: Optional[int] = None,
        config: Optional[OpenAIConfig] = None,
        client: Optional[Any] = None,
    ):
        """
        Args:
            api_key: OpenAI API 키 (없으면 설정의 OPENAI_API_KEY 사용)
            model_name: 임베딩 모델명
            dimensions: 벡터 차원 수
            config: OpenAI 설정 (없으면 get_config().openai)
            client: AsyncOpenAI 호환 클라이언트
        """
        self.config = config or get_config().openai
        self._model_name = model_name or self.config.model
        self._dimension = dimensions or self.config.dimensions

        if client is None:
            _api_key = api_key or self.config.api_key
            if not _api_key:
                raise ConfigurationError(
                    "OPENAI_API_KEY environment variable is required"
                )
            client = AsyncOpenAI(api_key=_api_key)

        self._client = client
        self._sleep = asyncio.sleep

        logger.info(
            f"EmbeddingClient ready: "
            f"model={self._model_name}, dim={self._dimension}"
        )

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def model_name(self) -> str:
        return self._model_name

    # ------------------------------------------------------------------
    # 단건
    # ------------------------------------------------------------------

    async def generate_embedding(self, text: str) -> EmbeddingResult:
        """
        단일 텍스트 임베딩

        Raises:
            ValidationError: 빈 텍스트
            ProviderError: API 호출 실패 또는 차원 불일치
        """
        if not text or not text.strip():
            raise ValidationError("Text cannot be empty")

        response = await self._create([text])
        embedding = self._check_dimension(list(response.data[0].embedding))

        return EmbeddingResult(
            embedding=embedding,
            tokens=self._usage_tokens(response),
        )

    # ------------------------------------------------------------------
    # 배치
    # ------------------------------------------------------------------

    async def generate_embeddings_batch(self, texts: list[str]) -> BatchEmbeddingResult:
        """
        여러 텍스트를 max_batch_size 단위로 나눠 임베딩

        API는 배치 내 응답 순서를 보장하지 않으므로 item.index로 재정렬합니다.

        Raises:
            ValidationError: 입력이 없거나 전부 빈 텍스트
            ProviderError: 어느 배치든 실패하면 전체 실패 (all-or-nothing)
        """
        if not texts:
            raise ValidationError("Texts array cannot be empty")

        indices = [i for i, t in enumerate(texts) if t and t.strip()]
        if not indices:
            raise ValidationError("All texts are empty")

        valid_texts = [texts[i] for i in indices]
        batch_size = max(self.config.max_batch_size, 1)
        batches = [
            valid_texts[i:i + batch_size]
            for i in range(0, len(valid_texts), batch_size)
        ]

        all_embeddings: list[list[float]] = []
        total_tokens = 0

        for batch_no, batch in enumerate(batches):
            # 레이트 리밋 대응: 배치 사이 고정 딜레이
            if batch_no > 0:
                await self._sleep(self.config.batch_delay_ms / 1000)

            response = await self._create(batch)
            if len(response.data) != len(batch):
                raise ProviderError(
                    f"Provider returned {len(response.data)} embeddings "
                    f"for {len(batch)} inputs"
                )

            ordered = sorted(response.data, key=lambda item: item.index)
            all_embeddings.extend(
                self._check_dimension(list(item.embedding)) for item in ordered
            )
            total_tokens += self._usage_tokens(response)

        costs = (total_tokens / 1_000_000) * self.config.cost_per_million_tokens

        logger.debug(
            f"Batch embedding done: texts={len(valid_texts)}, "
            f"batches={len(batches)}, tokens={total_tokens}"
        )

        return BatchEmbeddingResult(
            embeddings=all_embeddings,
            total_tokens=total_tokens,
            costs=costs,
            indices=indices,
        )

    # ------------------------------------------------------------------
    # 재시도
    # ------------------------------------------------------------------

    async def generate_embedding_with_retry(
        self,
        text: str,
        max_retries: int = 3,
    ) -> EmbeddingResult:
        """
        generate_embedding 실패 시 지수 백오프(1s, 2s, 4s ...)로 재시도

        Raises:
            마지막 시도의 예외
        """
        last_error: Optional[Exception] = None

        for attempt in range(max_retries):
            try:
                return await self.generate_embedding(text)
            except ValidationError:
                raise
            except Exception as e:
                last_error = e
                logger.warning(f"Embedding attempt {attempt + 1} failed: {e}")

                if attempt < max_retries - 1:
                    delay = 2 ** attempt
                    logger.info(f"Retrying in {delay}s...")
                    await self._sleep(delay)

        if last_error is None:
            raise ValidationError("max_retries must be at least 1")
        raise last_error

    # ------------------------------------------------------------------
    # 유틸
    # ------------------------------------------------------------------

    @staticmethod
    def estimate_tokens(text: str) -> int:
        """토큰 수 근사 (~4 chars/token)"""
        return math.ceil(len(text) / 4)

    def is_within_token_limit(self, text: str) -> bool:
        return self.estimate_tokens(text) <= self.config.max_tokens_per_request

    async def _create(self, inputs: list[str]) -> Any:
        try:
            return await self._client.embeddings.create(
                model=self._model_name,
                input=inputs,
                dimensions=self._dimension,
                encoding_format="float",
            )
        except Exception as e:
            logger.error(f"OpenAI embedding API error: {e}")
            raise ProviderError(f"Failed to generate embeddings: {e}") from e

    def _check_dimension(self, embedding: list[float]) -> list[float]:
        if len(embedding) != self._dimension:
            raise ProviderError(
                f"Embedding dimension mismatch "
                f"(expected={self._dimension}, got={len(embedding)})"
            )
        return embedding

    @staticmethod
    def _usage_tokens(response: Any) -> int:
        usage = getattr(response, "usage", None)
        return int(getattr(usage, "total_tokens", 0) or 0)


def create_embedding_client(config: Optional[OpenAIConfig] = None) -> EmbeddingClient:
    """설정 기반 EmbeddingClient 생성 (자격 증명 누락 시 ConfigurationError)"""
    return EmbeddingClient(config=config)
