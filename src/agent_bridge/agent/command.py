"""Argument vector and prompt composition for the agent CLI."""

from __future__ import annotations

import base64
import logging
import re
import time
from collections.abc import Sequence
from pathlib import Path

from agent_bridge.agent.models import FileAttachment, StreamRequest

logger = logging.getLogger(__name__)

UPLOAD_DIR_NAME = ".agent-uploads"
BASE_ARGS = ("--print", "--output-format", "stream-json", "--stream-partial-output", "--trust")
MODE_FLAGS = {"plan": "plan", "default": "ask"}
_UNSAFE_NAME_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


def resolve_work_dir(request: StreamRequest) -> Path:
    if request.working_directory:
        return Path(request.working_directory)
    return Path.home()


def build_args(request: StreamRequest, attachment_paths: Sequence[str] = ()) -> list[str]:
    """Return the CLI arguments (without the binary) for one prompt turn.

    `attachment_paths` must line up with the request's non-image attachments.
    """
    args = [*BASE_ARGS, "--workspace", str(resolve_work_dir(request))]
    if request.resume_session_id:
        args.extend(["--resume", request.resume_session_id])
    if request.model:
        args.extend(["--model", request.model])
    mode_flag = MODE_FLAGS.get(request.permission_mode or "")
    if mode_flag is not None:
        args.extend(["--mode", mode_flag])
    args.append(compose_prompt(request, attachment_paths))
    return args


def compose_prompt(request: StreamRequest, attachment_paths: Sequence[str] = ()) -> str:
    prompt = request.prompt
    files = [attachment for attachment in request.attachments if not attachment.is_image]
    if files:
        if len(attachment_paths) != len(files):
            raise ValueError(attachment_paths)
        references = "\n".join(
            f"[User attached file: {path} ({attachment.name})]"
            for path, attachment in zip(attachment_paths, files, strict=True)
        )
        prompt = (
            f"{references}\n\n"
            "Please read the attached file(s) above, then respond to the user's message:\n\n"
            f"{prompt}"
        )

    image_count = sum(1 for attachment in request.attachments if attachment.is_image)
    if image_count:
        prompt = f"[Note: {image_count} image(s) were attached but cannot be displayed in CLI mode.]\n\n{prompt}"

    if request.system_prompt:
        prompt = f"[System context: {request.system_prompt}]\n\n{prompt}"
    return prompt


def materialize_attachments(attachments: Sequence[FileAttachment], work_dir: Path) -> list[str]:
    """Return on-disk paths for non-image attachments, writing inline payloads under `work_dir`."""
    paths: list[str] = []
    upload_dir: Path | None = None
    for attachment in attachments:
        if attachment.is_image:
            continue
        if attachment.file_path:
            paths.append(attachment.file_path)
            continue
        if upload_dir is None:
            upload_dir = work_dir / UPLOAD_DIR_NAME
            upload_dir.mkdir(parents=True, exist_ok=True)
        target = upload_dir / f"{int(time.time() * 1000)}-{safe_file_name(attachment.name)}"
        target.write_bytes(base64.b64decode(attachment.data or ""))
        logger.info("Attachment written: name=%s path=%s", attachment.name, target)
        paths.append(str(target))
    return paths


def safe_file_name(name: str) -> str:
    base = Path(name.replace("\\", "/")).name or "attachment"
    return _UNSAFE_NAME_CHARS.sub("_", base)
