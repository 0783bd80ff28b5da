"""
Body-scan processing pipeline.

Uploads the captured photos to storage, then runs the analysis functions
one after another: estimate -> semantic -> match -> refine -> commit. A
step only runs once the result it depends on has been recorded. Refinement
is optional: when it fails the match result carries a fallback marker and
the pipeline goes on to commit.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import httpx

from errors import ScanPipelineError
from settings import Settings

logger = logging.getLogger(__name__)

BUCKET = "body-scans"
SIGNED_URL_TTL = 3600
VIEWS = ("front", "profile")
GENDERS = ("masculine", "feminine")
MAPPING_VERSION = "v1.0"

STEPS = ("upload", "estimate", "semantic", "match", "refine", "commit")
FUNCTIONS = {
    "estimate": "scan-estimate",
    "semantic": "scan-semantic",
    "match": "scan-match",
    "refine": "scan-refine-morphs",
    "commit": "scan-commit",
}


@dataclass
class CapturedPhoto:
    view: str
    content: bytes
    report: Optional[Dict[str, Any]] = None


@dataclass
class UploadedPhoto:
    view: str
    url: str
    report: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"view": self.view, "url": self.url, "report": self.report}


@dataclass
class ScanParams:
    height_cm: float
    weight_kg: float
    gender: str


def validate_scan_request(photos: List[Any], params: ScanParams) -> List[str]:
    """Problems with a scan request, empty when it is acceptable."""
    errors = []
    if len(photos) != 2:
        errors.append("Exactly 2 photos are required (front and profile)")
    for photo in photos:
        if photo.view not in VIEWS:
            errors.append(f"Invalid photo view: {photo.view}")
    if not 120 <= params.height_cm <= 230:
        errors.append("Height must be between 120 and 230 cm")
    if not 30 <= params.weight_kg <= 300:
        errors.append("Weight must be between 30 and 300 kg")
    if params.gender not in GENDERS:
        errors.append(f"Gender must be one of {', '.join(GENDERS)}")
    return errors


@dataclass
class ScanPipelineRun:
    """Results of one scan attempt, filled strictly in step order."""
    user_id: str
    client_scan_id: str
    photos: Optional[List[UploadedPhoto]] = None
    estimate: Optional[Dict[str, Any]] = None
    semantic: Optional[Dict[str, Any]] = None
    match: Optional[Dict[str, Any]] = None
    refine: Optional[Dict[str, Any]] = None
    commit: Optional[Dict[str, Any]] = None
    completed_steps: List[str] = field(default_factory=list)

    def _result(self, step: str):
        return self.photos if step == "upload" else getattr(self, step)

    def require(self, step: str) -> None:
        index = STEPS.index(step)
        if self._result(step) is not None:
            raise ScanPipelineError(step, "step already completed for this scan")
        for upstream in STEPS[:index]:
            if self._result(upstream) is None:
                raise ScanPipelineError(step, f"requires the {upstream} result first")

    def record(self, step: str, result) -> None:
        self.require(step)
        if step == "upload":
            self.photos = result
        else:
            setattr(self, step, result)
        self.completed_steps.append(step)
        logger.info(f"Scan {self.client_scan_id}: {step} recorded")

    @property
    def complete(self) -> bool:
        return self.commit is not None

    @property
    def server_scan_id(self) -> Optional[str]:
        return (self.commit or {}).get("scan_id")


class ScanPipeline:
    """Runs body-scan analyses against the scan edge functions."""

    def __init__(
        self,
        settings: Settings,
        access_token: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        on_step: Optional[Callable[[str, ScanPipelineRun], Any]] = None,
        timeout: float = 120.0,
    ):
        self.settings = settings
        self.access_token = access_token
        self.on_step = on_step
        self.timeout = timeout
        self._client = http_client

    def _headers(self) -> Dict[str, str]:
        token = self.access_token or self.settings.supabase_anon_key or ""
        headers = {"Authorization": f"Bearer {token}"}
        if self.settings.supabase_anon_key:
            headers["apikey"] = self.settings.supabase_anon_key
        return headers

    async def _post(self, url: str, **kwargs) -> httpx.Response:
        headers = {**self._headers(), **kwargs.pop("headers", {})}
        if self._client is not None:
            return await self._client.post(url, headers=headers, timeout=self.timeout, **kwargs)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(url, headers=headers, **kwargs)

    def _storage_url(self, path: str) -> str:
        return f"{self.settings.supabase_url}/storage/v1{path}"

    async def upload_photo(self, run: ScanPipelineRun, photo: CapturedPhoto) -> UploadedPhoto:
        path = f"scans/{run.user_id}/{run.client_scan_id}/{photo.view}.jpg"
        try:
            response = await self._post(
                self._storage_url(f"/object/{BUCKET}/{path}"),
                content=photo.content,
                headers={
                    "Content-Type": "image/jpeg",
                    "Cache-Control": str(SIGNED_URL_TTL),
                    "x-upsert": "false",
                },
            )
            if response.status_code >= 400:
                raise ScanPipelineError("upload", f"Upload failed for {photo.view}: {response.text}")

            signed = await self._post(
                self._storage_url(f"/object/sign/{BUCKET}/{path}"),
                json={"expiresIn": SIGNED_URL_TTL},
            )
            signed_path = signed.json().get("signedURL") if signed.status_code < 400 else None
            if not signed_path:
                raise ScanPipelineError("upload", f"Failed to get signed URL for {photo.view}")
        except httpx.HTTPError as e:
            logger.error(f"Scan {run.client_scan_id}: failed to upload {photo.view} photo: {e}")
            raise ScanPipelineError("upload", f"Upload failed for {photo.view}: {e}") from e

        return UploadedPhoto(view=photo.view, url=self._storage_url(signed_path), report=photo.report)

    async def upload_photos(self, run: ScanPipelineRun, photos: List[CapturedPhoto]) -> List[UploadedPhoto]:
        run.require("upload")
        logger.info(f"Scan {run.client_scan_id}: uploading {len(photos)} photos")
        uploaded = await asyncio.gather(*(self.upload_photo(run, photo) for photo in photos))
        run.record("upload", list(uploaded))
        self._notify("upload", run)
        return run.photos

    async def call_function(self, step: str, body: Dict[str, Any]) -> Dict[str, Any]:
        name = FUNCTIONS[step]
        try:
            response = await self._post(self.settings.function_url(name), json=body)
        except httpx.HTTPError as e:
            logger.error(f"{name} request failed: {e}")
            raise ScanPipelineError(step, f"{name} request failed: {e}") from e
        if response.status_code >= 400:
            logger.error(f"{name} returned {response.status_code}: {response.text[:500]}")
            raise ScanPipelineError(step, f"{name} failed: {response.status_code} - {response.text}")
        return response.json()

    def _notify(self, step: str, run: ScanPipelineRun) -> None:
        if self.on_step:
            self.on_step(step, run)

    async def estimate(self, run: ScanPipelineRun, params: ScanParams) -> Dict[str, Any]:
        run.require("estimate")
        result = await self.call_function("estimate", {
            "user_id": run.user_id,
            "photos": [photo.to_dict() for photo in run.photos],
            "user_declared_height_cm": params.height_cm,
            "user_declared_weight_kg": params.weight_kg,
            "user_declared_gender": params.gender,
            "clientScanId": run.client_scan_id,
            "resolvedGender": params.gender,
        })
        extracted = result.get("extracted_data") or {}
        logger.info(
            f"Scan {run.client_scan_id}: estimate done "
            f"(confidence={extracted.get('processing_confidence')})"
        )
        run.record("estimate", result)
        self._notify("estimate", run)
        return result

    async def semantic(self, run: ScanPipelineRun, params: ScanParams) -> Dict[str, Any]:
        run.require("semantic")
        result = await self.call_function("semantic", {
            "user_id": run.user_id,
            "photos": [photo.to_dict() for photo in run.photos],
            "extracted_data": run.estimate.get("extracted_data"),
            "user_declared_gender": params.gender,
            "clientScanId": run.client_scan_id,
        })
        logger.info(
            f"Scan {run.client_scan_id}: semantic done "
            f"(confidence={result.get('semantic_confidence')})"
        )
        run.record("semantic", result)
        self._notify("semantic", run)
        return result

    async def match(self, run: ScanPipelineRun, params: ScanParams) -> Dict[str, Any]:
        run.require("match")
        profile = run.semantic.get("semantic_profile") or {}
        result = await self.call_function("match", {
            "user_id": run.user_id,
            "extracted_data": run.estimate.get("extracted_data"),
            "semantic_profile": profile,
            "user_semantic_indices": {
                "morph_index": profile.get("morph_index") or 0,
                "muscle_index": profile.get("muscle_index") or 0,
            },
            "matching_config": {"gender": params.gender, "limit": 5},
            "clientScanId": run.client_scan_id,
        })
        logger.info(
            f"Scan {run.client_scan_id}: match done "
            f"({len(result.get('selected_archetypes') or [])} archetypes)"
        )
        run.record("match", result)
        self._notify("match", run)
        return result

    async def refine(self, run: ScanPipelineRun, params: ScanParams) -> Dict[str, Any]:
        """AI refinement of the matched morphology; falls back to the blend on failure."""
        run.require("refine")
        match = run.match
        archetypes = match.get("selected_archetypes") or [{}]
        extracted = run.estimate.get("extracted_data") or {}
        measurements = extracted.get("raw_measurements") or {}

        try:
            result = await self.call_function("refine", {
                "scan_id": run.client_scan_id,
                "user_id": run.user_id,
                "resolvedGender": params.gender,
                "photos": [photo.to_dict() for photo in run.photos],
                "blend_shape_params": archetypes[0].get("morph_values") or {},
                "blend_limb_masses": archetypes[0].get("limb_masses") or {},
                "k5_envelope": match.get("k5_envelope"),
                "vision_classification": run.semantic.get("semantic_profile"),
                "mapping_version": MAPPING_VERSION,
                "user_measurements": {
                    "height_cm": params.height_cm,
                    "weight_kg": params.weight_kg,
                    "estimated_bmi": extracted.get("estimated_bmi")
                    or params.weight_kg / (params.height_cm / 100) ** 2,
                    "raw_measurements": {
                        "waist_cm": measurements.get("waist_cm") or 80,
                        "chest_cm": measurements.get("chest_cm") or 95,
                        "hips_cm": measurements.get("hips_cm") or 100,
                    },
                },
            })
            match["final_shape_params"] = result.get("final_shape_params")
            match["final_limb_masses"] = result.get("final_limb_masses")
            logger.info(
                f"Scan {run.client_scan_id}: refinement done "
                f"(confidence={result.get('ai_confidence')})"
            )
        except ScanPipelineError as e:
            logger.warning(f"Scan {run.client_scan_id}: AI refinement failed, using blend fallback: {e}")
            result = {"ai_refine": False, "error": str(e), "fallback_used": True}

        match["ai_refinement"] = result
        run.record("refine", result)
        self._notify("refine", run)
        return result

    async def commit(self, run: ScanPipelineRun, params: ScanParams) -> Dict[str, Any]:
        run.require("commit")
        match = run.match
        archetype = (match.get("selected_archetypes") or [{}])[0]
        refinement = run.refine or {}
        shape_params = (
            refinement.get("final_shape_params")
            or match.get("final_shape_params")
            or archetype.get("morph_values")
            or {}
        )
        limb_masses = (
            refinement.get("final_limb_masses")
            or match.get("final_limb_masses")
            or archetype.get("limb_masses")
            or {}
        )

        result = await self.call_function("commit", {
            "user_id": run.user_id,
            "resolvedGender": params.gender,
            "estimate_result": run.estimate,
            "match_result": match,
            "morph_bounds": match.get("k5_envelope"),
            "semantic_result": run.semantic,
            "ai_refinement_result": refinement,
            "photos_metadata": [{"type": photo.view, "captureReport": photo.report} for photo in run.photos],
            "final_shape_params": shape_params,
            "final_limb_masses": limb_masses,
            "resolved_gender": params.gender,
            "mapping_version": MAPPING_VERSION,
            "gltf_model_id": f"{params.gender}_v4.13",
            "material_config_version": "pbr-v2",
            "avatar_version": "v2.0",
            "clientScanId": run.client_scan_id,
        })
        run.record("commit", result)
        logger.info(f"Scan {run.client_scan_id}: committed as {run.server_scan_id}")
        self._notify("commit", run)
        return result

    async def process(
        self,
        user_id: str,
        client_scan_id: str,
        photos: List[CapturedPhoto],
        params: ScanParams,
    ) -> ScanPipelineRun:
        problems = validate_scan_request(photos, params)
        if problems:
            raise ScanPipelineError("validate", "; ".join(problems))

        run = ScanPipelineRun(user_id=user_id, client_scan_id=client_scan_id)
        logger.info(f"Scan {client_scan_id}: pipeline started for {user_id}")

        await self.upload_photos(run, photos)
        await self.estimate(run, params)
        await self.semantic(run, params)
        await self.match(run, params)
        await self.refine(run, params)
        await self.commit(run, params)

        logger.info(f"Scan {client_scan_id}: pipeline complete")
        return run
