import pandas as pd
import pytest

from layoff_cleaner import BUSINESS_COLUMNS

# Text values as they arrive from the CSV export, "NULL" sentinels included.
RAW_ROWS = [
    ["Acme", "SF Bay Area", None, "100", "0.1", "3/5/2022", "Series B", "United States", "50"],
    ["Acme", "SF Bay Area", None, "100", "0.1", "3/5/2022", "Series B", "United States", "50"],
    ["Acme", "SF Bay Area", "Retail", "20", "NULL", "4/1/2022", "Series B", "United States", "50"],
    [" Coinbase ", "São Paulo", "CryptoCurrency", "NULL", "0.18", "12/15/2022", "Post-IPO", "Brazil.", "549"],
    ["Ghost", "Düsseldorf", "Crypto Currency", "NULL", "NULL", "1/2/2023", "Unknown", "Germany", "NULL"],
    ["Broken", "Berlin", "Food", "10", "0.5", "13/2022", "Seed", "Germany", "1"],
    ["Undated", "Oslo", "Travel", "5", "NULL", None, "Seed", "Norway", "2"],
]


def make_frame(rows):
    return pd.DataFrame(rows, columns=BUSINESS_COLUMNS)


@pytest.fixture
def raw_layoffs():
    return make_frame(RAW_ROWS)


@pytest.fixture
def raw_csv_bytes(raw_layoffs):
    return raw_layoffs.to_csv(index=False).encode("utf-8")
