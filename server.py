#   Copyright 2026 UCP Authors
#
#   Licensed under the Apache License, Version 2.0 (the "License");
#   you may not use this file except in compliance with the License.
#   You may obtain a copy of the License at
#
#       http://www.apache.org/licenses/LICENSE-2.0
#
#   Unless required by applicable law or agreed to in writing, software
#   distributed under the License is distributed on an "AS IS" BASIS,
#   WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#   See the License for the specific language governing permissions and
#   limitations under the License.

"""Giftologi Checkout Server (Python/FastAPI)."""

import logging
import sys
from typing import Sequence
from absl import app as absl_app
import config
from exceptions import MarketplaceError
from fastapi import FastAPI
from fastapi import Request
from fastapi.responses import JSONResponse
from routes.checkout import router as checkout_router
from routes.order import router as order_router
from routes.payment import router as payment_router
from routes.promo import router as promo_router
from routes.shipping import router as shipping_router
from routes.support import router as support_router
import uvicorn

# --- App Setup ---

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Giftologi Checkout Service",
    version=config.SERVER_VERSION,
    description=(
        "Checkout, promo, payment reconciliation and shipping for the gift"
        " registry marketplace"
    ),
    lifespan=config.lifespan,
)


@app.exception_handler(MarketplaceError)
async def marketplace_exception_handler(
    request: Request, exc: MarketplaceError
):
  """Handles domain exceptions and converts them to JSON responses."""
  del request  # Unused.
  return JSONResponse(
      status_code=exc.status_code,
      content={"detail": exc.message, "code": exc.code},
  )


@app.exception_handler(Exception)
async def unexpected_exception_handler(request: Request, exc: Exception):
  """Logs unexpected failures and hides their details from callers."""
  logger.exception("Unhandled error on %s %s", request.method, request.url.path)
  del exc  # Unused.
  return JSONResponse(
      status_code=500,
      content={"detail": "Internal server error", "code": "INTERNAL_ERROR"},
  )


app.include_router(checkout_router)
app.include_router(promo_router)
app.include_router(payment_router)
app.include_router(order_router)
app.include_router(shipping_router)
app.include_router(support_router)


def main(argv: Sequence[str]) -> None:
  """Main entry point for the checkout server."""
  del argv  # Unused.

  if config.FLAGS.database_path is None or config.FLAGS.port is None:
    logger.error(
        "Both --database_path and --port must be provided (or DATABASE_PATH"
        " and PORT set)."
    )
    print("\nUsage:")
    print(config.FLAGS.main_module_help())
    sys.exit(1)

  uvicorn.run(app, host="0.0.0.0", port=config.FLAGS.port)


def run() -> None:
  absl_app.run(main)


if __name__ == "__main__":
  run()
