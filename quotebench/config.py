"""
QuoteBench Configuration Management

从环境变量和配置文件中读取配置，支持 .env 文件。
"""

from typing import Optional

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError


class Settings(BaseSettings):
    """QuoteBench 配置"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
    )

    # API Server
    api_host: str = Field(default="0.0.0.0", alias="API_HOST")
    api_port: int = Field(default=8000, alias="API_PORT")
    api_reload: bool = Field(default=False, alias="API_RELOAD")

    # Chain / RPC
    upstream_rpc_url: str = Field(default="", alias="UPSTREAM_RPC_URL")
    anvil_rpc_url: str = Field(default="http://127.0.0.1:8545", alias="ANVIL_RPC_URL")
    chain_id: int = Field(default=10143, alias="CHAIN_ID")
    test_account: str = Field(
        default="0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266",
        alias="TEST_ACCOUNT",
    )

    # Anvil 进程
    anvil_spawn: bool = Field(default=False, alias="ANVIL_SPAWN")
    anvil_binary_path: str = Field(default="anvil", alias="ANVIL_BINARY_PATH")
    anvil_base_port: int = Field(default=8545, alias="ANVIL_BASE_PORT")

    # 超时（秒）
    read_timeout_seconds: float = Field(default=120, gt=0, alias="READ_TIMEOUT_SECONDS")
    reset_timeout_seconds: float = Field(default=300, gt=0, alias="RESET_TIMEOUT_SECONDS")
    transaction_timeout_seconds: float = Field(
        default=300, gt=0, alias="TRANSACTION_TIMEOUT_SECONDS"
    )

    # 重试
    reset_max_attempts: int = Field(default=5, ge=1, alias="RESET_MAX_ATTEMPTS")
    simulation_max_attempts: int = Field(default=3, ge=1, alias="SIMULATION_MAX_ATTEMPTS")

    # 状态写入后的等待（秒）
    settle_delay_seconds: float = Field(default=1.0, ge=0, alias="SETTLE_DELAY_SECONDS")
    probe_settle_delay_seconds: float = Field(
        default=0.1, ge=0, alias="PROBE_SETTLE_DELAY_SECONDS"
    )

    # 模拟参数
    assumed_gas_price_wei: int = Field(default=10**9, ge=0, alias="ASSUMED_GAS_PRICE_WEI")
    swap_gas_limit: int = Field(default=30_000_000, gt=0, alias="SWAP_GAS_LIMIT")
    erc20_buffer_multiplier: int = Field(default=10, ge=1, alias="ERC20_BUFFER_MULTIPLIER")
    simulation_enabled: bool = Field(default=True, alias="SIMULATION_ENABLED")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        if v.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"无效的日志级别: {v}")
        return v.upper()

    @property
    def is_production(self) -> bool:
        """是否为生产环境"""
        return not self.api_reload


def load_settings(**overrides) -> Settings:
    """
    读取并校验配置

    Raises:
        ConfigurationError: 缺少 UPSTREAM_RPC_URL 或任何字段无效
    """
    try:
        settings = Settings(**overrides)
    except ValidationError as e:
        raise ConfigurationError(f"配置无效: {e}") from e

    if not settings.upstream_rpc_url:
        raise ConfigurationError("缺少必需的配置 UPSTREAM_RPC_URL")
    return settings


# 全局配置实例
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """获取全局配置实例"""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reload_settings() -> Settings:
    """重新加载配置"""
    global _settings
    _settings = load_settings()
    return _settings
