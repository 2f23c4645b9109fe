"""Run soybean yield tuning and interpretation stages from a source checkout."""

from __future__ import annotations

import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))


def main() -> None:
    from soybean_yield_ml.pipelines.run_all import main as run

    run()


if __name__ == "__main__":
    main()
