"""
配置文件 - 项目配置管理
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field, field_validator
from typing import Optional


class DatabaseSettings(BaseModel):
    url: str = "sqlite+aiosqlite:///./payments.db"
    echo: bool = False


class Settings(BaseSettings):
    """项目配置"""

    # 基础配置
    PROJECT_NAME: str = Field(default="Unified Payments", validation_alias="PROJECT_NAME")
    VERSION: str = Field(default="1.0.0", validation_alias="VERSION")
    DEBUG: bool = Field(default=True, validation_alias="DEBUG")
    ENVIRONMENT: str = Field(default="development", validation_alias="ENVIRONMENT")

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)

    # 对外访问地址，用于拼接回调/跳转URL及 Square webhook 签名
    PUBLIC_BASE_URL: Optional[str] = Field(default=None, validation_alias="PUBLIC_BASE_URL")

    # CORS配置
    CORS_ORIGINS: list = Field(default=["http://localhost:3000"])

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="allow",
        env_nested_delimiter="__",
    )

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def _parse_cors_origins(cls, v):
        """允许逗号分隔字符串。"""
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v

    @field_validator("PUBLIC_BASE_URL")
    @classmethod
    def _strip_trailing_slash(cls, v: Optional[str]) -> Optional[str]:
        return v.rstrip("/") if v else v


settings = Settings()
