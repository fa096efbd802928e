import os

from dotenv import load_dotenv
load_dotenv()


class Config:
    SECRET_KEY: str = os.getenv("SECRET_KEY", "dev_secret")
    JWT_EXPIRES_DAYS: int = int(os.getenv("JWT_EXPIRES_DAYS", "30"))
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///healthchef.db")
    GOOGLE_API_KEY: str = os.getenv("GOOGLE_API_KEY", "")
    GEMINI_MODEL: str = os.getenv("GEMINI_MODEL", "gemini-2.0-flash")
    GENERATION_TIMEOUT_SECONDS: float = float(os.getenv("GENERATION_TIMEOUT_SECONDS", "30"))
    CORS_ORIGINS: str = os.getenv("CORS_ORIGINS", "http://localhost:8080")
    FRONTEND_URL: str = os.getenv("FRONTEND_URL", "http://localhost:8080")
    RESET_TOKEN_MINUTES: int = int(os.getenv("RESET_TOKEN_MINUTES", "10"))
    PORT: int = int(os.getenv("PORT", "5000"))
    FLASK_ENV: str = os.getenv("FLASK_ENV", "production")


config = Config()
