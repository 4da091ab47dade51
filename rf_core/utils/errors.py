"""
ReturnFlow 错误处理系统
遵循 RFC7807 Problem Details 标准
"""
from decimal import Decimal
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field


class ProblemDetail(BaseModel):
    """RFC7807 Problem Details 模型"""
    model_config = ConfigDict(
        extra="allow",
        json_schema_extra={
            "example": {
                "type": "about:blank",
                "title": "Insufficient Stock",
                "status": 409,
                "detail": "Insufficient stock for product P-100: available 4, requested 10",
                "code": "INSUFFICIENT_STOCK"
            }
        }
    )

    type: str = Field(default="about:blank")
    title: str
    status: int
    detail: Optional[str] = None
    instance: Optional[str] = None
    code: Optional[str] = None  # 业务错误码


class ReturnFlowException(Exception):
    """ReturnFlow 基础异常类"""

    retryable = False

    def __init__(
        self,
        status: int,
        code: str,
        title: str,
        detail: Optional[str] = None,
        **kwargs
    ):
        self.status = status
        self.code = code
        self.title = title
        self.detail = detail
        self.extra = kwargs
        super().__init__(detail or title)

    def to_problem_detail(self, instance: Optional[str] = None) -> ProblemDetail:
        """转换为 Problem Details 格式"""
        extra = {
            key: str(value) if isinstance(value, Decimal) else value
            for key, value in self.extra.items()
        }
        return ProblemDetail(
            type="about:blank",
            title=self.title,
            status=self.status,
            detail=self.detail,
            instance=instance,
            code=self.code,
            **extra
        )

    def to_dict(self, instance: Optional[str] = None) -> Dict[str, Any]:
        """转换为路由层可直接返回的错误体"""
        return {
            "ok": False,
            "error": self.to_problem_detail(instance).model_dump(exclude_none=True)
        }


class ValidationError(ReturnFlowException):
    """422 输入不合法"""
    def __init__(self, code: str, detail: str, **kwargs):
        super().__init__(
            status=422,
            code=code,
            title="Validation Failed",
            detail=detail,
            **kwargs
        )


class NotFoundError(ReturnFlowException):
    """404 未找到"""
    def __init__(self, code: str, resource: str):
        super().__init__(
            status=404,
            code=code,
            title="Not Found",
            detail=f"{resource} not found"
        )


class EligibilityError(ReturnFlowException):
    """422 不满足退货条件（超出退货期、超量退货、原单缺失）"""
    def __init__(self, code: str, detail: str, **kwargs):
        super().__init__(
            status=422,
            code=code,
            title="Return Not Eligible",
            detail=detail,
            **kwargs
        )


class InvalidStateError(ReturnFlowException):
    """409 当前状态不允许该操作"""
    def __init__(self, code: str, detail: str, current_status: Optional[str] = None):
        super().__init__(
            status=409,
            code=code,
            title="Invalid State",
            detail=detail,
            current_status=current_status
        )


class InsufficientStockError(ReturnFlowException):
    """409 可售库存不足（采购退货）"""
    def __init__(self, product_id: str, available: int, requested: int):
        self.product_id = product_id
        self.available = available
        self.requested = requested
        super().__init__(
            status=409,
            code="INSUFFICIENT_STOCK",
            title="Insufficient Stock",
            detail=f"Insufficient stock for product {product_id}: available {available}, requested {requested}",
            product_id=product_id,
            available=available,
            requested=requested
        )


class TransientStoreError(ReturnFlowException):
    """503 序列化冲突/死锁，可重试"""

    retryable = True

    def __init__(self, code: str = "TRANSIENT_STORE_ERROR", detail: str = "Concurrent update conflict", attempts: int = 0):
        super().__init__(
            status=503,
            code=code,
            title="Service Unavailable",
            detail=detail,
            attempts=attempts
        )


class PersistenceError(ReturnFlowException):
    """500 数据库错误"""
    def __init__(self, code: str = "PERSISTENCE_ERROR", detail: str = "Database operation failed"):
        super().__init__(
            status=500,
            code=code,
            title="Internal Server Error",
            detail=detail
        )
