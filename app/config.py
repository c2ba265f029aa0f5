from pydantic_settings import BaseSettings
from typing import List, Literal


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "Warehouse Inventory API"
    APP_ENV: str = "development"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"
    TIMEZONE: str = "Asia/Shanghai"
    
    # Database
    DATABASE_URL: str
    
    # JWT
    JWT_SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30
    
    # CORS
    ALLOWED_ORIGINS: str = "http://localhost:3000"
    
    # API
    API_V1_PREFIX: str = "/api/v1"
    
    # Unit conversion graph
    CONVERSION_MAX_UNITS: int = 500
    CONVERSION_MAX_EDGES: int = 2000
    CYCLE_RATE_TOLERANCE: float = 1e-6
    CYCLE_POLICY: Literal["reject", "warn"] = "reject"
    
    @property
    def allowed_origins_list(self) -> List[str]:
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",")]
    
    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
