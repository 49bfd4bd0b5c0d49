"""Readers that turn location spreadsheets into raw rows."""

from locimport.sources.csv_file import (
    SAMPLE_CSV,
    FormatError,
    LocationSheet,
    parse_location_text,
    read_location_csv,
)
