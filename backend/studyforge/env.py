# Environment loading helpers.
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Repo root, two levels above this package.
ROOT_DIR = Path(__file__).resolve().parents[2]


# Load the repo-root .env (or an explicit file) without overriding set values.
def load_environment(dotenv_path: Optional[str] = None) -> bool:
    path = dotenv_path or ROOT_DIR / ".env"
    return load_dotenv(dotenv_path=path, override=False)
