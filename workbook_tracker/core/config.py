from pydantic_settings import BaseSettings

from dotenv import load_dotenv

load_dotenv()  # load .env file

class Settings(BaseSettings):
    SUPABASE_URL: str = ""
    SUPABASE_SERVICE_KEY: str = ""
    # "supabase" or "memory"
    STORE_BACKEND: str = "supabase"
    AUTOSAVE_DELAY_MS: int = 700
    DISTRIBUTION_WORKERS: int = 4
    SESSION_TTL: int = 3600
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"

    @property
    def autosave_delay(self) -> float:
        return self.AUTOSAVE_DELAY_MS / 1000.0

settings = Settings()
