"""
layoff_cleaner.py — cleaning pipeline for the corporate layoffs dataset.

Features
--------
- Stage a working copy of the source (DataFrame, CSV/Excel file or SQL table)
- Remove exact duplicates across all nine business columns (first occurrence wins)
- Trim company names and unify category families by prefix ("Crypto*" -> "Crypto")
- Strip punctuation and accents from location/country
- Validate M/D/YYYY dates, drop malformed ones, parse the rest to real dates
- Turn the "NULL" sentinel into missing values and cast the numeric columns
- Fill missing industries from other rows of the same company
- Drop rows with neither total_laid_off nor percentage_laid_off
- CLI with JSON-config support

Usage
-----
Python API:
    from layoff_cleaner import LayoffCleaner, CleanConfig

    cleaner = LayoffCleaner(CleanConfig(impute_keys=["company"]))
    df = cleaner.read("layoffs.csv")
    cleaned, report = cleaner.clean(df)
    cleaner.write(cleaned, "layoffs_clean.csv")

CLI:
    layoff-cleaner --input layoffs.csv --output layoffs_clean.csv --config clean.json
    layoff-cleaner --db-url postgresql://user@host/db --source-table layoffs

Config file schema (JSON):
{
  "industry_prefixes": {"Crypto": "Crypto"},
  "null_sentinels": ["NULL"],
  "numeric_columns": {"total_laid_off": "int", "percentage_laid_off": "float"},
  "impute_keys": ["company"],
  "date_format": "%m/%d/%Y"
}
"""

from __future__ import annotations
from dataclasses import dataclass, asdict, field
from contextlib import contextmanager
from typing import List, Dict, Any, Optional, Tuple, Union
from pathlib import Path
import datetime
import pandas as pd
import numpy as np
import re
import json
import unicodedata
import argparse

import sqlalchemy as sa
from loguru import logger


BUSINESS_COLUMNS = [
    "company",
    "location",
    "industry",
    "total_laid_off",
    "percentage_laid_off",
    "date",
    "stage",
    "country",
    "funds_raised_millions",
]

DATE_PATTERN = r"^[0-9]{1,2}/[0-9]{1,2}/[0-9]{4}$"
DATE_FORMAT = "%m/%d/%Y"


# ---------------------- Errors ----------------------

class LayoffCleaningError(Exception):
    """Base class for errors that abort the cleaning pipeline."""


class SchemaError(LayoffCleaningError):
    pass


class ConversionError(LayoffCleaningError):
    """A value passed validation but could not be converted to its target type."""

    def __init__(self, column: Optional[str], values=(), message: Optional[str] = None):
        self.column = column
        self.values = list(values)
        if message is None:
            message = f"Column '{column}' has values that cannot be converted: {self.values[:10]}"
        super().__init__(message)


# ---------------------- Config & Report dataclasses ----------------------

@dataclass
class CleanConfig:
    industry_prefixes: Dict[str, str] = field(default_factory=lambda: {"Crypto": "Crypto"})
    null_sentinels: List[str] = field(default_factory=lambda: ["NULL"])
    numeric_columns: Dict[str, str] = field(
        default_factory=lambda: {"total_laid_off": "int", "percentage_laid_off": "float"}
    )
    impute_keys: List[str] = field(default_factory=lambda: ["company"])
    date_pattern: str = DATE_PATTERN
    date_format: str = DATE_FORMAT

    def __post_init__(self):
        bad = {c: k for c, k in self.numeric_columns.items() if k not in ("int", "float")}
        if bad:
            raise ValueError(f"numeric_columns accepts 'int' or 'float', got {bad}")
        unknown = [k for k in self.impute_keys if k not in BUSINESS_COLUMNS]
        if not self.impute_keys or unknown:
            raise ValueError(f"impute_keys must be business columns, got {self.impute_keys}")
        re.compile(self.date_pattern)


@dataclass
class CleanReport:
    rows_before: int
    rows_after: int
    duplicates_removed: int
    industries_canonicalized: int
    invalid_dates_removed: int
    sentinels_nulled: Dict[str, int]
    industries_imputed: int
    irrelevant_removed: int
    missing_by_col: Dict[str, int]
    dtypes: Dict[str, str]


# ---------------------- Utility helpers ----------------------

_PUNCT_RE = re.compile(r"[^\w\s]")
_INT_RE = re.compile(r"^\s*[+-]?[0-9]+\s*$")

# letters NFKD leaves alone
BASE_LETTERS = {
    "ø": "o", "Ø": "O", "ł": "l", "Ł": "L", "đ": "d", "Đ": "D",
    "ß": "ss", "æ": "ae", "Æ": "AE", "œ": "oe", "Œ": "OE", "ı": "i",
}
_BASE_LETTERS = str.maketrans(BASE_LETTERS)


def unaccent(s: str) -> str:
    decomposed = unicodedata.normalize("NFKD", s.translate(_BASE_LETTERS))
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def clean_place(s: str) -> str:
    """Drop everything but word characters and whitespace, then fold accents.

    The second punctuation pass catches characters that only appear after
    compatibility decomposition (e.g. the fraction slash in "½").
    """
    return _PUNCT_RE.sub("", unaccent(_PUNCT_RE.sub("", s)))


def canonicalize(value: Any, prefixes: Dict[str, str]) -> Any:
    if isinstance(value, str):
        for prefix, canonical in prefixes.items():
            if value.startswith(prefix):
                return canonical
    return value


def is_blank(series: pd.Series) -> pd.Series:
    return series.isna() | series.map(lambda x: isinstance(x, str) and not x.strip()).astype(bool)


def require_columns(df: pd.DataFrame, columns: List[str] = BUSINESS_COLUMNS):
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise SchemaError(f"Missing required columns: {missing}")


# ---------------------- Stages ----------------------

def stage_frame(df: pd.DataFrame) -> pd.DataFrame:
    return df.copy(deep=True)


def drop_duplicate_records(df: pd.DataFrame) -> pd.DataFrame:
    # drop_duplicates groups missing values together, like SQL PARTITION BY
    return df.drop_duplicates(subset=BUSINESS_COLUMNS, keep="first")


def normalize_text(df: pd.DataFrame, prefixes: Optional[Dict[str, str]] = None) -> pd.DataFrame:
    prefixes = {"Crypto": "Crypto"} if prefixes is None else prefixes
    df = df.copy()
    df["company"] = df["company"].map(lambda x: x.strip() if isinstance(x, str) else x)
    df["industry"] = df["industry"].map(lambda x: canonicalize(x, prefixes))
    for c in ("location", "country"):
        df[c] = df[c].map(lambda x: clean_place(x) if isinstance(x, str) else x)
    return df


def _parse_date(value: Any, fmt: str) -> Optional[datetime.date]:
    if pd.isna(value):
        return None
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    return datetime.datetime.strptime(value, fmt).date()


def normalize_dates(df: pd.DataFrame, pattern: str = DATE_PATTERN,
                    fmt: str = DATE_FORMAT) -> pd.DataFrame:
    """Delete rows whose date text is malformed and parse the rest.

    Parsed values are ``datetime.date`` objects, so any year from 1 to 9999
    survives. Absent dates are kept. Values that are already dates pass
    through, so the stage can be rerun on its own output.
    """
    rx = re.compile(pattern)
    raw = df["date"]
    typed = raw.map(lambda x: isinstance(x, datetime.date) and not pd.isna(x)).astype(bool)
    shaped = raw.map(lambda x: isinstance(x, str) and rx.fullmatch(x) is not None).astype(bool)
    out = df.loc[raw.isna() | typed | shaped].copy()

    parsed, bad = [], []
    for value in out["date"]:
        try:
            parsed.append(_parse_date(value, fmt))
        except ValueError:
            bad.append(value)
    if bad:
        raise ConversionError("date", dict.fromkeys(bad))
    out["date"] = pd.Series(parsed, index=out.index, dtype=object)
    return out


_INT64_BOUND = 2.0 ** 63


def _cast_numeric(series: pd.Series, kind: str) -> pd.Series:
    text = series.map(lambda x: x.strip() if isinstance(x, str) else x)
    parsed = pd.to_numeric(text, errors="coerce")
    as_float = parsed.astype("float64")
    # "nan"/"inf" text is rejected rather than read as a present outcome
    bad = (text.notna() & parsed.isna()) | np.isinf(as_float)
    if kind == "int":
        bad |= text.map(lambda x: isinstance(x, str) and _INT_RE.fullmatch(x) is None).astype(bool)
        bad |= as_float.notna() & ((as_float % 1 != 0) | (as_float.abs() >= _INT64_BOUND))
    if bad.any():
        raise ConversionError(series.name, series[bad].unique())
    try:
        return parsed.astype("Int64" if kind == "int" else "float64")
    except (TypeError, ValueError, OverflowError) as e:
        raise ConversionError(series.name, text.dropna().unique()) from e


def convert_numeric(df: pd.DataFrame, columns: Optional[Dict[str, str]] = None,
                    sentinels: Optional[List[str]] = None) -> pd.DataFrame:
    columns = columns or {"total_laid_off": "int", "percentage_laid_off": "float"}
    sentinels = ["NULL"] if sentinels is None else sentinels
    df = df.copy()
    for col, kind in columns.items():
        series = df[col].map(lambda x: np.nan if isinstance(x, str) and x in sentinels else x)
        df[col] = _cast_numeric(series, kind)
    return df


def impute_from_context(df: pd.DataFrame, keys: Optional[List[str]] = None,
                        target: str = "industry") -> pd.DataFrame:
    """Fill missing ``target`` values from rows that share the natural key.

    When donors disagree the most frequent value wins, ties going to the
    lexicographically smallest one.
    """
    keys = list(keys or ["company"])
    df = df.copy()
    missing = is_blank(df[target])
    df[target] = df[target].astype(object)
    df.loc[missing, target] = np.nan

    donors = df.loc[~missing, keys + [target]]
    counts = donors.groupby(keys + [target]).size().reset_index(name="n")
    counts = counts.sort_values(["n", target], ascending=[False, True], kind="mergesort")
    best = counts.drop_duplicates(subset=keys, keep="first").drop(columns="n")
    best = best.rename(columns={target: "_donor"})

    donor = df[keys].merge(best, on=keys, how="left")["_donor"]
    donor = pd.Series(donor.to_numpy(), index=df.index)
    df.loc[missing, target] = donor[missing]
    return df


def filter_relevant(df: pd.DataFrame,
                    outcomes: Tuple[str, ...] = ("total_laid_off", "percentage_laid_off")) -> pd.DataFrame:
    return df.loc[df[list(outcomes)].notna().any(axis=1)].copy()


# ---------------------- SQL staging ----------------------

@contextmanager
def _engine(db: Union[str, sa.engine.Engine]):
    # engines built from a URL here are disposed here; callers own theirs
    if not isinstance(db, str):
        yield db
        return
    engine = sa.create_engine(db)
    try:
        yield engine
    finally:
        engine.dispose()


def stage_sql_table(db: Union[str, sa.engine.Engine], source: str,
                    staging: Optional[str] = None) -> pd.DataFrame:
    """Copy ``source`` into a staging table and return the staged rows.

    The source table is only read; the staging table is replaced.
    """
    staging = staging or f"{source}_staging"
    if staging == source:
        raise ValueError("staging table must differ from the source table")
    with _engine(db) as engine:
        pd.read_sql_table(source, engine).to_sql(staging, engine, if_exists="replace", index=False)
        logger.info(f"Staged table '{source}' into '{staging}'")
        return pd.read_sql_table(staging, engine)


def write_sql_table(df: pd.DataFrame, db: Union[str, sa.engine.Engine], table: str):
    with _engine(db) as engine:
        df.to_sql(table, engine, if_exists="replace", index=False)


# ---------------------- Core class ----------------------

class LayoffCleaner:
    def __init__(self, config: Optional[CleanConfig] = None):
        self.config = config or CleanConfig()

    # ---------- IO ----------
    def read(self, path: Union[str, Path], sheet: Optional[Union[str, int]] = None) -> pd.DataFrame:
        # only empty cells are missing; "NULL" must survive as text
        path = Path(path)
        if path.suffix.lower() in [".xlsx", ".xlsm", ".xls"]:
            return pd.read_excel(path, sheet_name=sheet or 0, keep_default_na=False, na_values=[""])
        return pd.read_csv(path, dtype=str, keep_default_na=False, na_values=[""])

    def write(self, df: pd.DataFrame, path: Union[str, Path]):
        path = Path(path)
        if path.suffix.lower() in [".xlsx", ".xlsm", ".xls"]:
            with pd.ExcelWriter(path, engine="openpyxl") as writer:
                df.to_excel(writer, index=False, sheet_name="cleaned")
        else:
            df.to_csv(path, index=False, date_format="%Y-%m-%d")

    def clean_table(self, db: Union[str, sa.engine.Engine], source: str,
                    staging: Optional[str] = None) -> Tuple[pd.DataFrame, CleanReport]:
        staging = staging or f"{source}_staging"
        with _engine(db) as engine:
            staged = stage_sql_table(engine, source, staging)
            cleaned, report = self.clean(staged)
            write_sql_table(cleaned, engine, staging)
        return cleaned, report

    # ---------- Cleaning pipeline ----------
    def clean(self, df: pd.DataFrame) -> Tuple[pd.DataFrame, CleanReport]:
        cfg = self.config
        require_columns(df)
        rows_before = len(df)

        # 1) Staging
        staged = stage_frame(df)

        # 2) Deduplication
        deduped = drop_duplicate_records(staged)
        duplicates_removed = len(staged) - len(deduped)
        logger.info(f"Deduplicated: {len(staged)} -> {len(deduped)} rows")

        # 3) Text normalization
        texted = normalize_text(deduped, cfg.industry_prefixes)
        changed = texted["industry"].ne(deduped["industry"]) & deduped["industry"].notna()
        industries_canonicalized = int(changed.sum())

        # 4) Dates
        dated = normalize_dates(texted, cfg.date_pattern, cfg.date_format)
        invalid_dates_removed = len(texted) - len(dated)
        if invalid_dates_removed:
            logger.warning(f"Removed {invalid_dates_removed} rows with malformed dates")

        # 5) Sentinels & numeric types
        sentinels_nulled = {c: int(dated[c].isin(cfg.null_sentinels).sum()) for c in cfg.numeric_columns}
        numeric = convert_numeric(dated, cfg.numeric_columns, cfg.null_sentinels)
        logger.info(f"Converted numeric columns, sentinels nulled: {sentinels_nulled}")

        # 6) Imputation
        blank_before = int(is_blank(numeric["industry"]).sum())
        imputed = impute_from_context(numeric, cfg.impute_keys)
        blank_after = int(imputed["industry"].isna().sum())
        if blank_after:
            logger.warning(f"{blank_after} rows still have no industry after imputation")

        # 7) Relevance filter
        cleaned = filter_relevant(imputed)
        logger.info(f"Cleaning completed. {len(cleaned)} of {rows_before} rows kept")

        report = CleanReport(
            rows_before=rows_before,
            rows_after=len(cleaned),
            duplicates_removed=duplicates_removed,
            industries_canonicalized=industries_canonicalized,
            invalid_dates_removed=invalid_dates_removed,
            sentinels_nulled=sentinels_nulled,
            industries_imputed=blank_before - blank_after,
            irrelevant_removed=len(imputed) - len(cleaned),
            missing_by_col={c: int(cleaned[c].isna().sum()) for c in cleaned.columns},
            dtypes={c: str(dt) for c, dt in cleaned.dtypes.items()},
        )
        return cleaned, report


# ---------------------- CLI ----------------------

def load_config(path: Optional[str]) -> CleanConfig:
    if not path:
        return CleanConfig()
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    return CleanConfig(**raw)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Layoff Cleaner: clean the layoffs dataset from a file or SQL table.")
    parser.add_argument("--input", help="Path to CSV or Excel file to clean")
    parser.add_argument("--output", help="Where to write cleaned data (csv/xlsx)")
    parser.add_argument("--sheet", default=None, help="Excel sheet name or index for input")
    parser.add_argument("--db-url", default=None, help="SQLAlchemy URL of the database holding the source table")
    parser.add_argument("--source-table", default="layoffs", help="Source table name (read only)")
    parser.add_argument("--staging-table", default=None, help="Working table name (default <source>_staging)")
    parser.add_argument("--config", default=None, help="Path to JSON config")
    args = parser.parse_args(argv)

    if not args.db_url and not (args.input and args.output):
        parser.error("either --db-url or both --input and --output are required")

    cleaner = LayoffCleaner(load_config(args.config))
    if args.db_url:
        _, report = cleaner.clean_table(args.db_url, args.source_table, args.staging_table)
    else:
        # Parse sheet as int if possible
        sheet = args.sheet
        if isinstance(sheet, str) and sheet.isdigit():
            sheet = int(sheet)
        df = cleaner.read(args.input, sheet=sheet)
        cleaned, report = cleaner.clean(df)
        cleaner.write(cleaned, args.output)

    # Print a compact report to stdout
    print(json.dumps(asdict(report), indent=2))


if __name__ == "__main__":
    main()
