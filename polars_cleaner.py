# polars_cleaner.py
"""Lazy polars version of the layoff cleaning pipeline, used by the HTTP service.

Stages mirror ``layoff_cleaner`` one to one. Nothing is computed until the
LazyFrame is collected, so conversion failures surface from ``collect()``;
``clean_frame`` maps them to ``ConversionError``.
"""
import polars as pl
from io import BytesIO
from typing import List, Dict, Optional

from layoff_cleaner import (
    BASE_LETTERS,
    BUSINESS_COLUMNS,
    CleanConfig,
    ConversionError,
    SchemaError,
)

OUTCOME_COLUMNS = ["total_laid_off", "percentage_laid_off"]


def load_csv_to_lazyframe(file_bytes: bytes) -> pl.LazyFrame:
    # infer_schema_length=0 reads every column as text so "NULL" survives
    return pl.read_csv(BytesIO(file_bytes), infer_schema_length=0).lazy()


def require_columns(ldf: pl.LazyFrame, columns: List[str] = BUSINESS_COLUMNS):
    names = ldf.collect_schema().names()
    missing = [c for c in columns if c not in names]
    if missing:
        raise SchemaError(f"Missing required columns: {missing}")


def drop_duplicate_records(ldf: pl.LazyFrame) -> pl.LazyFrame:
    return ldf.unique(subset=BUSINESS_COLUMNS, keep="first", maintain_order=True)


def _canonical_industry(prefixes: Dict[str, str]) -> pl.Expr:
    industry = pl.col("industry")
    items = list(prefixes.items())
    if not items:
        return industry
    # first matching prefix wins, like the dict order in the pandas engine
    prefix, canonical = items[0]
    chain = pl.when(industry.str.starts_with(prefix)).then(pl.lit(canonical))
    for prefix, canonical in items[1:]:
        chain = chain.when(industry.str.starts_with(prefix)).then(pl.lit(canonical))
    return chain.otherwise(industry)


def _clean_place(name: str) -> pl.Expr:
    # same steps as layoff_cleaner.clean_place; \w also matches marks in polars regex
    stripped = pl.col(name).str.replace_all(r"[^\w\s]", "")
    folded = (
        stripped.str.replace_many(list(BASE_LETTERS), list(BASE_LETTERS.values()))
        .str.normalize("NFKD")
        .str.replace_all(r"\p{M}", "")
    )
    return folded.str.replace_all(r"[^\w\s]", "").alias(name)


def normalize_text(ldf: pl.LazyFrame, prefixes: Optional[Dict[str, str]] = None) -> pl.LazyFrame:
    prefixes = {"Crypto": "Crypto"} if prefixes is None else prefixes
    return ldf.with_columns(
        pl.col("company").str.strip_chars(),
        _canonical_industry(prefixes).alias("industry"),
        *[_clean_place(c) for c in ("location", "country")],
    )


def normalize_dates(ldf: pl.LazyFrame, cfg: CleanConfig) -> pl.LazyFrame:
    date = pl.col("date")
    ldf = ldf.filter(date.is_null() | date.str.contains(cfg.date_pattern))
    # zero-pad single digit month/day so strptime sees fixed width fields
    padded = date.str.replace_all(r"\b([0-9])\b", "0${1}")
    return ldf.with_columns(padded.str.strptime(pl.Date, cfg.date_format, strict=True).alias("date"))


def convert_numeric(ldf: pl.LazyFrame, cfg: CleanConfig) -> pl.LazyFrame:
    exprs = []
    for name, kind in cfg.numeric_columns.items():
        col = pl.col(name)
        text = pl.when(col.is_in(cfg.null_sentinels)).then(None).otherwise(col).str.strip_chars()
        # "nan"/"inf" would pass the float cast; turn them into text the strict cast rejects
        value = text.cast(pl.Float64, strict=False)
        text = pl.when(value.is_nan() | value.is_infinite()).then(pl.lit("non-finite")).otherwise(text)
        dtype = pl.Int64 if kind == "int" else pl.Float64
        exprs.append(text.cast(dtype, strict=True).alias(name))
    return ldf.with_columns(exprs)


def impute_from_context(ldf: pl.LazyFrame, keys: Optional[List[str]] = None) -> pl.LazyFrame:
    keys = list(keys or ["company"])
    industry = pl.col("industry")
    blank = industry.is_null() | (industry.str.strip_chars() == "")
    ldf = ldf.with_columns(pl.when(blank).then(None).otherwise(industry).alias("industry"))

    # most frequent donor per key, ties to the smallest value
    donors = (
        ldf.filter(pl.all_horizontal([pl.col(k).is_not_null() for k in keys + ["industry"]]))
        .group_by(keys + ["industry"])
        .agg(pl.len().alias("_n"))
        .sort(["_n", "industry"], descending=[True, False])
        .unique(subset=keys, keep="first", maintain_order=True)
        .select(keys + [pl.col("industry").alias("_donor")])
    )
    return (
        ldf.with_row_index("_row")
        .join(donors, on=keys, how="left")
        .sort("_row")
        .with_columns(pl.coalesce(["industry", "_donor"]).alias("industry"))
        .drop(["_row", "_donor"])
    )


def filter_relevant(ldf: pl.LazyFrame) -> pl.LazyFrame:
    return ldf.filter(pl.any_horizontal([pl.col(c).is_not_null() for c in OUTCOME_COLUMNS]))


def clean_lazyframe(ldf: pl.LazyFrame, cfg: Optional[CleanConfig] = None) -> pl.LazyFrame:
    cfg = cfg or CleanConfig()
    require_columns(ldf)
    ldf = drop_duplicate_records(ldf)
    ldf = normalize_text(ldf, cfg.industry_prefixes)
    ldf = normalize_dates(ldf, cfg)
    ldf = convert_numeric(ldf, cfg)
    ldf = impute_from_context(ldf, cfg.impute_keys)
    return filter_relevant(ldf)


def clean_frame(df: pl.DataFrame, cfg: Optional[CleanConfig] = None) -> pl.DataFrame:
    try:
        return clean_lazyframe(df.lazy(), cfg).collect()
    except (pl.exceptions.ComputeError, pl.exceptions.InvalidOperationError) as e:
        raise ConversionError(None, message=f"Conversion failed: {e}") from e
