from pydantic import Field
from pydantic_settings import BaseSettings
from sqlalchemy.engine import URL
from typing import Optional, Union


class Settings(BaseSettings):
    # Database
    db_host: str = Field(..., env="DB_HOST")
    db_user: str = Field(..., env="DB_USER")
    db_password: str = Field(..., env="DB_PASSWORD")
    db_name: str = Field(..., env="DB_NAME")
    database_url: Optional[str] = Field(None, env="DATABASE_URL")
    db_pool_size: int = Field(10, env="DB_POOL_SIZE")

    # Object storage
    aws_region: Optional[str] = Field(None, env="AWS_REGION")
    aws_bucket_name: str = Field(..., env="AWS_BUCKET_NAME")
    aws_access_key_id: Optional[str] = Field(None, env="AWS_ACCESS_KEY_ID")
    aws_secret_access_key: Optional[str] = Field(None, env="AWS_SECRET_ACCESS_KEY")
    s3_endpoint: str = Field("s3.amazonaws.com", env="S3_ENDPOINT")
    s3_secure: bool = Field(True, env="S3_SECURE")

    # API
    api_title: str = "WildLens Gallery Service"
    api_version: str = "1.0.0"
    api_host: str = Field("0.0.0.0", env="API_HOST")
    port: int = Field(3000, env="PORT")

    # Logging
    log_level: str = Field("INFO", env="LOG_LEVEL")

    # Metrics
    metrics_enabled: bool = Field(True, env="METRICS_ENABLED")

    class Config:
        env_file = ".env"

    @property
    def sqlalchemy_url(self) -> Union[str, URL]:
        if self.database_url:
            return self.database_url
        return URL.create(
            "mysql+pymysql",
            username=self.db_user,
            password=self.db_password,
            host=self.db_host,
            database=self.db_name,
        )


settings = Settings()
