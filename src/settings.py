import os
from dataclasses import dataclass
from typing import List, Optional


@dataclass
class Settings:
    """Endpoints and credentials read from the environment."""
    supabase_url: Optional[str] = None
    supabase_anon_key: Optional[str] = None
    openai_api_key: Optional[str] = None
    supabase_service_role_key: Optional[str] = None
    openai_base_url: str = "https://api.openai.com/v1"

    @classmethod
    def from_env(cls) -> "Settings":
        # The browser build reads the VITE_ names; the edge functions read the
        # plain ones. Accept either for the shared Supabase URL.
        supabase_url = os.environ.get("VITE_SUPABASE_URL") or os.environ.get("SUPABASE_URL")
        return cls(
            supabase_url=supabase_url.rstrip("/") if supabase_url else None,
            supabase_anon_key=os.environ.get("VITE_SUPABASE_ANON_KEY"),
            openai_api_key=os.environ.get("OPENAI_API_KEY"),
            supabase_service_role_key=os.environ.get("SUPABASE_SERVICE_ROLE_KEY"),
            openai_base_url=os.environ.get("OPENAI_BASE_URL", "https://api.openai.com/v1").rstrip("/"),
        )

    def missing_client_settings(self) -> List[str]:
        missing = []
        if not self.supabase_url:
            missing.append("VITE_SUPABASE_URL")
        if not self.supabase_anon_key:
            missing.append("VITE_SUPABASE_ANON_KEY")
        return missing

    def function_url(self, name: str) -> str:
        return f"{self.supabase_url}/functions/v1/{name}"

    def rest_url(self, path: str) -> str:
        return f"{self.supabase_url}/rest/v1/{path.lstrip('/')}"

    def service_headers(self) -> dict:
        key = self.supabase_service_role_key or ""
        return {
            "apikey": key,
            "Authorization": f"Bearer {key}",
            "Content-Type": "application/json",
        }


def mask_key(key: Optional[str]) -> str:
    if not key:
        return "NOT_SET"
    return f"{key[:7]}..."
