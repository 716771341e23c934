"""
Helper module to read and write the CSV tables of a data directory.
"""
import json
import os

import pandas as pd


def get_file_source(data_dir: str, file_name: str):
    """
    Returns the path of a table file if it exists.

    Args:
        data_dir: Directory holding the CSV tables
        file_name: Table file name (e.g., 'inventory_batches.csv')

    Returns:
        str path, or None if the file does not exist
    """
    file_path = os.path.join(data_dir, file_name)
    if os.path.isfile(os.path.abspath(file_path)):
        return file_path
    return None


def safe_read_csv(file_path: str, **kwargs):
    """
    Safely read a CSV from disk.

    All columns are read as strings unless a dtype is given; numeric and
    boolean conversion happens when rows are mapped to entities.

    Args:
        file_path: Path to the CSV file
        **kwargs: passed to pd.read_csv()

    Returns:
        pd.DataFrame or raises an exception
    """
    kwargs.setdefault('dtype', str)
    try:
        return pd.read_csv(file_path, **kwargs)
    except FileNotFoundError:
        raise FileNotFoundError(f"File not found: {file_path}")
    except pd.errors.EmptyDataError:
        return pd.DataFrame()


def read_table(data_dir: str, file_name: str, columns=None) -> pd.DataFrame:
    """
    Read a table, returning an empty frame when the file is absent.

    Args:
        data_dir: Directory holding the CSV tables
        file_name: Table file name
        columns: Column names for the empty frame

    Returns:
        pd.DataFrame
    """
    source = get_file_source(data_dir, file_name)
    if source is None:
        return pd.DataFrame(columns=columns or [])
    return safe_read_csv(source)


def _serialize_cell(value):
    if isinstance(value, (list, dict)):
        return json.dumps(value, default=str)
    return value


def write_table(rows, data_dir: str, file_name: str, columns=None) -> str:
    """
    Write a list of records to a CSV table. List and dict cells are stored as JSON.

    Args:
        rows: List of dict records
        data_dir: Directory holding the CSV tables
        file_name: Table file name
        columns: Column order (extra record keys are appended)

    Returns:
        str: Path written
    """
    os.makedirs(data_dir, exist_ok=True)
    file_path = os.path.join(data_dir, file_name)

    df = pd.DataFrame([{k: _serialize_cell(v) for k, v in row.items()} for row in rows])
    if columns:
        ordered = list(columns) + [c for c in df.columns if c not in columns]
        df = df.reindex(columns=ordered)

    df.to_csv(file_path, index=False)
    return file_path
