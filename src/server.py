"""
TwinForge AI functions server.

Serves the voice coach relay and the meal-plan generator under the same
paths the Supabase functions use.

Run with:
    python src/server.py

Then point the client's VITE_SUPABASE_URL at http://localhost:8765
"""

import logging
import os
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from meal_plan_generator import MealPlanGenerator
from settings import Settings, mask_key
from token_middleware import TokenLedger
from voice_coach.relay import VoiceCoachRelay

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings.from_env()

    app = FastAPI(
        title="TwinForge AI functions",
        description="Voice coach relay and meal-plan generation",
        version="0.1.0",
    )

    # CORS for browser access
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    ledger = TokenLedger(settings)
    VoiceCoachRelay(settings, ledger=ledger).mount(app, prefix="/functions/v1/voice-coach-realtime")
    MealPlanGenerator(settings, ledger=ledger).mount(app, prefix="/functions/v1/meal-plan-generator")

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "twinforge-functions"}

    logger.info(
        f"App created (supabase={settings.supabase_url or 'NOT_SET'}, "
        f"openai_key={mask_key(settings.openai_api_key)})"
    )
    return app


def main():
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO"),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    uvicorn.run(
        create_app(),
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8765")),
        log_level="info",
    )


if __name__ == "__main__":
    main()
