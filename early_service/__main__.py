# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Allow ``python -m early_service``."""

from early_service.cli import app

if __name__ == "__main__":
    app(prog_name="early-service")
