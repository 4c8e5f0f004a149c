import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from errors import ConfigurationError

load_dotenv()


class Settings(BaseModel):
    """Runtime configuration, built once from the environment and passed to each component"""

    database_url: str = "sqlite:///./ticketing.db"

    # Prices in whole SEK
    price_regular: int = Field(125, ge=0)
    price_member: int = Field(80, ge=0)
    price_student: int = Field(80, ge=0)
    price_child: int = Field(0, ge=0)

    # Member-ticket allowance per membership type
    member_limit_single: int = Field(1, ge=0)
    member_limit_family: int = Field(6, ge=0)
    member_limit_student: int = Field(1, ge=0)
    member_limit_pensioner: int = Field(1, ge=0)
    member_cache_ttl: int = Field(300, ge=0)

    ocr_tolerance: int = Field(3, ge=0, le=100)
    ocrspace_api_key: Optional[str] = None
    ocrspace_url: str = "https://api.ocr.space/parse/image"
    ocr_timeout: float = Field(30.0, gt=0)

    ticket_prefix: str = "SIS25"
    ticket_len: int = Field(4, ge=3, le=12)
    ticket_strategy: str = "random"
    ticket_max_attempts: int = Field(5, ge=1, le=20)
    ticket_use_jwt: bool = True
    ticket_signing_secret: Optional[str] = None
    ticket_token_days: int = Field(365, ge=1)

    batch_default_limit: int = Field(50, ge=1)
    batch_max_limit: int = Field(500, ge=1, le=500)
    claim_ttl: int = Field(900, ge=1)

    storage_dir: str = "./storage"
    public_base_url: str = "http://localhost:8000"
    public_files_path: str = "/files"

    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_from_email: Optional[str] = None
    smtp_from_name: str = "Pasar Malam SIS"
    smtp_timeout: float = Field(20.0, gt=0)
    mail_bcc: Optional[str] = None
    mail_reply_to: Optional[str] = None
    event_name: str = "Pasar Malam SIS 2025"

    admin_user: str = "admin"
    admin_pass: str = "password"

    log_level: str = "INFO"

    @field_validator("ticket_strategy")
    @classmethod
    def check_strategy(cls, value):
        value = value.strip().lower()
        if value not in ("random", "sequence"):
            raise ValueError("TICKET_STRATEGY must be 'random' or 'sequence'")
        return value

    @field_validator("ticket_prefix")
    @classmethod
    def check_prefix(cls, value):
        value = value.strip().upper()
        if not value or "|" in value or "-" in value:
            raise ValueError("TICKET_PREFIX must be non-empty and contain no '|' or '-'")
        return value

    @field_validator("public_files_path")
    @classmethod
    def check_files_path(cls, value):
        return "/" + value.strip("/")

    @classmethod
    def from_env(cls) -> "Settings":
        """Read every field from its upper-case environment variable when set"""
        values = {}
        for name in cls.model_fields:
            raw = os.getenv(name.upper())
            if raw is not None and raw != "":
                values[name] = raw
        return cls(**values)

    def price_for(self, ticket_type) -> int:
        return {
            "regular": self.price_regular,
            "member": self.price_member,
            "student": self.price_student,
            "children": self.price_child,
        }[getattr(ticket_type, "value", ticket_type)]

    def member_limit(self, member_type) -> int:
        return {
            "single": self.member_limit_single,
            "family": self.member_limit_family,
            "student": self.member_limit_student,
            "pensioner": self.member_limit_pensioner,
        }.get(getattr(member_type, "value", member_type), 1)

    def require_ocr(self):
        if not self.ocrspace_api_key:
            raise ConfigurationError("OCRSPACE_API_KEY must be set to verify payments with OCR")

    def require_signing(self):
        if self.ticket_use_jwt and not self.ticket_signing_secret:
            raise ConfigurationError("TICKET_SIGNING_SECRET must be set when TICKET_USE_JWT is on")

    def require_smtp(self):
        missing = [n for n in ("smtp_user", "smtp_password") if not getattr(self, n)]
        if missing:
            raise ConfigurationError(f"Missing SMTP settings: {', '.join(m.upper() for m in missing)}")


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Dependency for FastAPI routes to get the process settings"""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings
