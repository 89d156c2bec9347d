import os
import re
import json
import hashlib
from pathlib import Path
from typing import Any, Dict

BASE_DIR = Path(__file__).resolve().parent.parent
DEFAULT_DATA_DIR = BASE_DIR / "data"

DEFAULT_RULES: Dict[str, Any] = {
    "min_confidence": 4.0,
    "value_sample_size": 50,
    "value_full_credit_ratio": 0.6,
    "header_scan_rows": 5,
    "sample_values_per_column": 3,
}


def user_data_dir() -> Path:
    override = os.environ.get("ROSTER_DATA_DIR")
    if override:
        return Path(override)
    appdata = os.environ.get("APPDATA")
    if appdata:
        return Path(appdata) / "RosterImport" / "data"
    return DEFAULT_DATA_DIR


def load_json(path: Path, default: Any):
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, ValueError):
        return default


def save_json(path: Path, obj: Any):
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(obj, f, ensure_ascii=False, indent=2)


_DASH_CHARS_RE = re.compile(r"[\u2010\u2011\u2012\u2013\u2014\u2212]")
_NBSP_RE = re.compile(r"[\u00A0\u2007\u202F]")  # NBSP variants
_CAMEL_RE = re.compile(r"([a-z])([A-Z])")
_ALPHA_DIGIT_RE = re.compile(r"(?<=[A-Za-z])(?=\d)|(?<=\d)(?=[A-Za-z])")
_HEADER_PUNCT_RE = re.compile(r"[^0-9a-z#\s]")


def norm_text(s: Any) -> str:
    """
    General text normalization:
    - BOM and non-breaking spaces
    - outer quotes
    - every dash variant -> '-'
    - lower case, collapsed whitespace
    """
    if s is None:
        return ""

    s = str(s)

    # invisible characters that CSV/Excel exports like to carry
    s = s.replace("\ufeff", "")
    s = _NBSP_RE.sub(" ", s)
    s = s.strip()
    if len(s) >= 2 and s[0] == s[-1] and s[0] in ('"', "'"):
        s = s[1:-1].strip()
    s = s.lower()
    s = _DASH_CHARS_RE.sub("-", s)
    s = re.sub(r"\s+", " ", s).strip()
    return s


def norm_header(s: Any) -> str:
    """
    Header normalization for alias matching:
    - camelCase and letter/digit boundaries become spaces ("guardian2Email" -> "guardian 2 email")
    - case and punctuation are stripped, '#' is kept ("Student #")
    """
    if s is None:
        return ""
    raw = str(s).replace("\ufeff", "")
    raw = _CAMEL_RE.sub(r"\1 \2", raw)
    raw = _ALPHA_DIGIT_RE.sub(" ", raw)
    t = norm_text(raw)
    t = _HEADER_PUNCT_RE.sub(" ", t)
    return re.sub(r"\s+", " ", t).strip()


def slugify(s: Any) -> str:
    t = norm_text(s)
    t = re.sub(r"[^0-9a-z]+", "-", t)
    return t.strip("-")


def column_signature(columns) -> str:
    # structure signature of a table by its headers (for saved mapping profiles)
    joined = "||".join([norm_header(c) for c in columns])
    return hashlib.md5(joined.encode("utf-8")).hexdigest()


def rules_path() -> Path:
    return user_data_dir() / "rules.json"


def load_rules() -> Dict[str, Any]:
    rules = dict(DEFAULT_RULES)
    overrides = load_json(rules_path(), {})
    if isinstance(overrides, dict):
        for k, v in overrides.items():
            if k in rules:
                rules[k] = v
    return rules


def profiles_path() -> Path:
    d = user_data_dir()
    d.mkdir(parents=True, exist_ok=True)
    p = d / "profiles.json"
    if not p.exists():
        save_json(p, {})
    return p


def database_url() -> str:
    url = os.environ.get("ROSTER_DB_URL")
    if url:
        return url
    d = user_data_dir()
    d.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{d / 'roster.db'}"
