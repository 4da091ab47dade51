"""
ReturnFlow Configuration Management
遵循约束：环境变量前缀 RF__
"""
from dataclasses import dataclass
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from functools import lru_cache


@dataclass(frozen=True)
class AccountCodes:
    """退货过账使用的科目代码"""
    cash: str
    bank: str
    accounts_receivable: str
    inventory: str
    accounts_payable: str
    sales_returns: str
    cost_of_goods_sold: str
    purchase_returns: str


class Settings(BaseSettings):
    """全局配置类"""
    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="RF__",
        case_sensitive=False
    )

    # Database
    db_host: str = Field(default="localhost")
    db_port: int = Field(default=5432)
    db_name: str = Field(default="returnflow")
    db_user: str = Field(default="returnflow")
    db_password: str = Field(default="")
    db_url: Optional[str] = Field(default=None)  # 完整连接串，优先于上面的字段
    db_echo: bool = Field(default=False)

    # 连接池：常驻连接 db_pool_size，上限 db_pool_size + db_max_overflow
    db_pool_size: int = Field(default=2)
    db_max_overflow: int = Field(default=18)
    db_pool_timeout: int = Field(default=5)
    db_pool_recycle: int = Field(default=60)
    db_isolation_level: str = Field(default="READ COMMITTED")

    # 慢查询
    slow_query_threshold_ms: int = Field(default=100)
    slow_query_log_dir: str = Field(default="logs")

    # 事务重试
    tx_max_retries: int = Field(default=5)
    tx_retry_base_delay_ms: int = Field(default=100)

    # 退货策略
    return_window_days: int = Field(default=30)
    restocking_fee_percent: float = Field(default=0.0)

    # 科目表（只读配置）
    account_cash: str = Field(default="1000")
    account_bank: str = Field(default="1010")
    account_receivable: str = Field(default="1100")
    account_inventory: str = Field(default="1200")
    account_payable: str = Field(default="2000")
    account_sales_returns: str = Field(default="4100")
    account_cogs: str = Field(default="5000")
    account_purchase_returns: str = Field(default="5100")

    # Redis / 通知
    redis_host: str = Field(default="localhost")
    redis_port: int = Field(default=6379)
    redis_db: int = Field(default=0)
    redis_password: Optional[str] = Field(default=None)
    notifications_enabled: bool = Field(default=True)
    event_topic_prefix: str = Field(default="rf.returns")

    # Monitoring
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")  # json or text

    @field_validator("event_topic_prefix")
    @classmethod
    def validate_event_topic_prefix(cls, v):
        """确保事件主题前缀符合规范"""
        if not v.startswith("rf."):
            raise ValueError("Event topic prefix must start with 'rf.'")
        return v

    @field_validator("return_window_days")
    @classmethod
    def validate_return_window(cls, v):
        if v <= 0:
            raise ValueError("Return window must be a positive number of days")
        return v

    @field_validator(
        "account_cash", "account_bank", "account_receivable", "account_inventory",
        "account_payable", "account_sales_returns", "account_cogs", "account_purchase_returns"
    )
    @classmethod
    def validate_account_code(cls, v):
        if not v or not v.strip():
            raise ValueError("Account code cannot be empty")
        return v.strip()

    @property
    def database_url(self) -> str:
        """构建数据库连接字符串"""
        if self.db_url:
            return self.db_url
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @property
    def redis_url(self) -> str:
        """构建 Redis 连接字符串"""
        password = f":{self.redis_password}@" if self.redis_password else ""
        return f"redis://{password}{self.redis_host}:{self.redis_port}/{self.redis_db}"

    @property
    def account_codes(self) -> AccountCodes:
        return AccountCodes(
            cash=self.account_cash,
            bank=self.account_bank,
            accounts_receivable=self.account_receivable,
            inventory=self.account_inventory,
            accounts_payable=self.account_payable,
            sales_returns=self.account_sales_returns,
            cost_of_goods_sold=self.account_cogs,
            purchase_returns=self.account_purchase_returns,
        )


@lru_cache()
def get_settings() -> Settings:
    """获取配置单例"""
    return Settings()
