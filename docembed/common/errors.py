"""
Pipeline Errors
===============

임베딩 파이프라인 예외 계층

  ValidationError       : 빈 쿼리/텍스트, 잘못된 ID → 400, 재시도 안 함
  NotFoundError         : 없는 잡/문서 → API는 404, 잡은 백오프 후 재시도
                          (문서 행 커밋이 늦게 보이는 경우)
  ProviderError         : 임베딩 API 호출 실패 → 재시도 대상
  ConfigurationError    : 자격 증명 누락 등 → 생성 시점에 즉시 실패
  StorageError          : DB 쓰기/읽기 실패 → 잡 실패
  LeaseUnavailableError : 문서 lease 획득 실패 → 큐 백오프 후 재시도
  JobStalledError       : 잡 lock 만료 (워커 중단) → 시도 1회로 계산 후 재시도
"""


class PipelineError(Exception):
    """파이프라인 예외 기본 클래스"""


class ValidationError(PipelineError):
    pass


class NotFoundError(PipelineError):
    pass


class ProviderError(PipelineError):
    pass


class ConfigurationError(PipelineError):
    pass


class StorageError(PipelineError):
    pass


class LeaseUnavailableError(PipelineError):
    pass


class JobStalledError(PipelineError):
    pass


# 큐 레벨에서 재시도해도 결과가 같은 예외
UNRECOVERABLE_ERRORS = (ValidationError,)


def is_unrecoverable(exc: BaseException) -> bool:
    return isinstance(exc, UNRECOVERABLE_ERRORS)
