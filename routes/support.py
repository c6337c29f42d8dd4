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

"""Inbound support email webhook."""

import json
from typing import Any

import dependencies
from fastapi import APIRouter
from fastapi import Depends
from fastapi import Request
from services.support_service import SupportService

router = APIRouter()


async def _parse_payload(request: Request) -> Any:
  """Reads multipart, urlencoded or JSON bodies into a plain object."""
  content_type = request.headers.get("content-type", "")
  if "multipart/form-data" in content_type or (
      "application/x-www-form-urlencoded" in content_type
  ):
    form = await request.form()
    return {k: v for k, v in form.items() if isinstance(v, str)}

  raw = (await request.body()).decode("utf-8", errors="replace")
  if not raw.strip():
    return {}
  try:
    return json.loads(raw)
  except ValueError:
    return {"raw": raw}


@router.post(
    "/support/email-reply",
    status_code=201,
    operation_id="support_email_reply",
    dependencies=[Depends(dependencies.verify_inbound_email_secret)],
)
async def email_reply(
    request: Request,
    support_service: SupportService = Depends(
        dependencies.get_support_service
    ),
) -> dict[str, Any]:
  """Attach an emailed reply to its support ticket."""
  message = await support_service.handle_inbound(await _parse_payload(request))
  return {
      "success": True,
      "ticket_id": message.ticket_id,
      "message_id": message.id,
  }
