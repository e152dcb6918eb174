"""
RentalSync - Serverless Entry Point

Exposes the FastAPI trigger app through Mangum so a timer or cron-triggered
function can call /trigger and /trigger/all.
"""

import os
import sys

from mangum import Mangum

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from rentalsync.api.server import app  # noqa: E402

handler = Mangum(app, lifespan="off")
