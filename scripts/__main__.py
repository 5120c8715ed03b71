"""`python -m scripts` loads the default dimensions and demo municipalities."""

import asyncio

from scripts.seed import _run_seed

asyncio.run(_run_seed())
