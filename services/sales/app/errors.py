"""
Sales Service — エラー分類と結果型

エラーは4種類に分類する:
  - validation: 入力が業務ルールに反する（入力を直せば再試行できる）
  - not_found:  参照先（注文・顧客など）が存在しない
  - conflict:   同時更新で前提が崩れた（操作全体を再試行する）
  - storage:    ストア側の障害（トランザクションはロールバック済み）

ユニットオブワーク内では例外として送出してロールバックを起こし、
エンジンの境界で Outcome に詰め替えて返す。呼び出し側は error.kind で分岐する。
"""

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar
from uuid import UUID

T = TypeVar("T")


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    STORAGE = "storage"


class SalesError(Exception):
    kind: ErrorKind

    def __init__(
        self,
        message: str,
        *,
        entity: str | None = None,
        entity_id: UUID | None = None,
        rule: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.entity = entity
        self.entity_id = entity_id
        self.rule = rule

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "entity": self.entity,
            "entity_id": str(self.entity_id) if self.entity_id else None,
            "rule": self.rule,
        }


class ValidationError(SalesError):
    kind = ErrorKind.VALIDATION


class NotFoundError(SalesError):
    kind = ErrorKind.NOT_FOUND


class ConflictError(SalesError):
    kind = ErrorKind.CONFLICT


class StorageError(SalesError):
    kind = ErrorKind.STORAGE


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """成功なら value、失敗なら error を持つタグ付き結果"""

    value: T | None = None
    error: SalesError | None = None

    @property
    def success(self) -> bool:
        return self.error is None

    @property
    def kind(self) -> ErrorKind | None:
        return self.error.kind if self.error else None

    @classmethod
    def ok(cls, value: T) -> "Outcome[T]":
        return cls(value=value)

    @classmethod
    def failed(cls, error: SalesError) -> "Outcome[T]":
        return cls(error=error)
