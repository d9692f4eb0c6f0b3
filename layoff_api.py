# layoff_api.py
from fastapi import FastAPI, File, UploadFile, Form, HTTPException
from fastapi.responses import StreamingResponse, JSONResponse
from pydantic import BaseModel, ValidationError
import polars as pl
import pandas as pd
from io import BytesIO
from dataclasses import asdict
import datetime
import hashlib
import json
import os
import tempfile
from typing import List, Optional, Dict, Any
from pathlib import Path

from loguru import logger

from layoff_cleaner import CleanConfig, LayoffCleaner, LayoffCleaningError
from polars_cleaner import clean_frame, load_csv_to_lazyframe

app = FastAPI(title="Layoff Cleaning API (lazy)")


# Form config schema; omitted keys fall back to CleanConfig defaults
class CleanOptions(BaseModel):
    industry_prefixes: Dict[str, str] = {"Crypto": "Crypto"}
    null_sentinels: List[str] = ["NULL"]
    impute_keys: List[str] = ["company"]

    def to_config(self) -> CleanConfig:
        return CleanConfig(**self.model_dump())


CACHE_DIR = Path(os.environ.get("LAYOFF_CLEANER_CACHE_DIR", Path(tempfile.gettempdir()) / "layoff_clean_cache"))
CACHE_DIR.mkdir(parents=True, exist_ok=True)


def compute_cache_key(file_bytes: bytes, config_json: str) -> str:
    h = hashlib.sha256()
    h.update(file_bytes)
    h.update(config_json.encode("utf-8"))
    return h.hexdigest()


def parse_options(config: Optional[str]) -> CleanConfig:
    try:
        cfg_obj: Dict[str, Any] = json.loads(config) if config else {}
        return CleanOptions(**cfg_obj).to_config()
    except (json.JSONDecodeError, TypeError, ValidationError, ValueError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid `config`: {e}")


@app.get("/")
def root():
    return {"status": "ok", "service": "layoff_cleaner_api"}


@app.post("/clean")
async def clean_endpoint(
    file: UploadFile = File(...),
    config: Optional[str] = Form(None)  # JSON string
):
    """
    Accepts multipart upload: file (csv). Optional `config` form field is JSON string of CleanOptions.
    Returns cleaned CSV (attachment) with a JSON report in the X-Clean-Report header.
    """
    raw = await file.read()
    cfg = parse_options(config)

    config_json = json.dumps(asdict(cfg), sort_keys=True)
    cache_key = compute_cache_key(raw, config_json)
    cached_csv = CACHE_DIR / f"{cache_key}.csv"
    cached_report = CACHE_DIR / f"{cache_key}.report.json"
    headers = {"Content-Disposition": f'attachment; filename="cleaned_{file.filename}"'}

    # If cached, return cached file + report
    if cached_csv.exists() and cached_report.exists():
        report = json.loads(cached_report.read_text(encoding="utf-8"))
        report["cached"] = True
        return StreamingResponse(
            BytesIO(cached_csv.read_bytes()),
            media_type="text/csv",
            headers={**headers, "X-Clean-Report": json.dumps(report)},
        )

    try:
        df_in = load_csv_to_lazyframe(raw).collect()
    except pl.exceptions.PolarsError as e:
        raise HTTPException(status_code=400, detail=f"Failed to parse CSV: {e}")

    try:
        df_out = clean_frame(df_in, cfg)
    except LayoffCleaningError as e:
        logger.warning(f"Rejected upload {file.filename}: {e}")
        raise HTTPException(status_code=422, detail=str(e))

    report = {
        "rows_before": df_in.height,
        "rows_after": df_out.height,
        "missing_by_col": {c: int(df_out[c].null_count()) for c in df_out.columns},
        "dtypes": {c: str(t) for c, t in df_out.schema.items()},
        "cached": False,
    }
    logger.info(f"Cleaned {file.filename}: {df_in.height} -> {df_out.height} rows")

    csv_bytes = df_out.write_csv().encode("utf-8")
    cached_csv.write_bytes(csv_bytes)
    cached_report.write_text(json.dumps(report), encoding="utf-8")

    return StreamingResponse(
        BytesIO(csv_bytes),
        media_type="text/csv",
        headers={**headers, "X-Clean-Report": json.dumps(report)},
    )


# JSON contract endpoint for programmatic use, runs the pandas engine
@app.post("/clean/json")
async def clean_json(payload: List[Dict[str, Any]]):
    try:
        df = pd.DataFrame(payload)
        cleaned, report = LayoffCleaner().clean(df)
    except LayoffCleaningError as e:
        raise HTTPException(status_code=422, detail=str(e))
    iso = cleaned["date"].map(lambda d: d.isoformat() if isinstance(d, datetime.date) else None)
    out = cleaned.assign(date=iso)
    return JSONResponse(content={
        "rows": json.loads(out.to_json(orient="records")),
        "report": asdict(report),
    })
