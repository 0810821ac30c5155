# caret/config/settings.py

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator, model_validator


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # --- Core ---
    network: str = Field(default="hardhat")
    db_path: str = Field(default="./data/caret.sqlite")
    port: int = Field(default=8080)

    # --- Completion service (OpenAI-compatible endpoint) ---
    llm_api_key: Optional[str] = None
    llm_base_url: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta/openai/"
    )
    llm_model: str = Field(default="gemini-2.0-flash")

    # --- Price history ---
    coingecko_base: str = Field(default="https://api.coingecko.com/api/v3")
    coingecko_api_key: Optional[str] = None
    price_cache_sec: float = Field(default=300.0)
    price_cache_size: int = Field(default=10)

    # --- Telegram ---
    telegram_api_id: Optional[int] = None
    telegram_api_hash: Optional[str] = None
    telegram_bot_token: Optional[str] = None
    telegram_session: str = Field(default="caret-bot")

    # --- Chain ---
    rpc_url: Optional[str] = None
    chain_id: Optional[int] = None
    native_symbol: Optional[str] = None
    rpc_timeout_sec: float = Field(default=20.0)
    definitions_path: str = Field(default="./definitions.json")
    escrow_factory: Optional[str] = None
    escrow_init_code_hash: Optional[str] = None
    min_gas_wei: int = Field(default=10**15)

    # --- Trading ---
    proposal_ttl_sec: float = Field(default=300.0)
    session_ttl_sec: float = Field(default=300.0)
    sweep_interval_sec: float = Field(default=30.0)
    max_custom_amount: float = Field(default=10_000.0)
    decline_memory_limit: int = Field(default=5, le=5)
    default_history_days: int = Field(default=7, le=15)

    # --- Validators ---
    @field_validator("db_path")
    @classmethod
    def check_db_extension(cls, v: str) -> str:
        if not v.endswith((".sqlite", ".db", ".sqlite3")):
            raise ValueError(
                f"Invalid database path: {v}! Please only use .sqlite .db or .sqlite3 extensions"
            )
        return v

    @model_validator(mode="after")
    def configure_network_defaults(self):
        """Fill defaults depending on the selected network."""
        if self.network == "hardhat":
            self.chain_id = self.chain_id or 31337
            self.rpc_url = self.rpc_url or "http://127.0.0.1:8545"
            self.native_symbol = self.native_symbol or "ETH"

        elif self.network == "duckchain":
            self.chain_id = self.chain_id or 5545
            self.rpc_url = self.rpc_url or "https://rpc.duckchain.io"
            self.native_symbol = self.native_symbol or "TON"

        return self


# Global settings instance
settings = Settings()
