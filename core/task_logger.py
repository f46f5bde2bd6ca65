"""Reqbench Plugin Bridge — Invocation Audit Log

One JSONL record per tool invocation state change (created, started,
completed, failed, blocked):
- sensitive parameters and results redacted per tool
  (``Tool.redact_params``, ``Tool.redact_result``)
- params and results truncated
- size-based rotation with a retention count
- records chained by hash so edits and deletions are detectable
- file lock around each append (several servers may share a log dir)
"""

from __future__ import annotations
import hashlib
import json
import logging
import os
import threading
import uuid
from dataclasses import asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

if os.name != "nt":
    import fcntl

from models.models import InvocationRecord, SafetyLevel, Tool

logger = logging.getLogger("reqbench.task_logger")

DEFAULT_MAX_LOG_SIZE_BYTES = 50 * 1024 * 1024  # 50 MB
DEFAULT_MAX_LOG_FILES = 10
DEFAULT_MAX_RESULT_LENGTH = 10_000  # chars
REDACTED = "***REDACTED***"


class TaskLogger:
    def __init__(
        self,
        log_dir: str = "logs",
        max_log_size: int = DEFAULT_MAX_LOG_SIZE_BYTES,
        max_log_files: int = DEFAULT_MAX_LOG_FILES,
        max_result_length: int = DEFAULT_MAX_RESULT_LENGTH,
    ):
        self.log_dir = log_dir
        self.max_log_size = max_log_size
        self.max_log_files = max_log_files
        self.max_result_length = max_result_length
        self._lock = threading.Lock()
        self._last_hash: Optional[str] = None
        self._redact_rules: Dict[str, dict] = {}  # tool_name -> {param_keys, redact_result}

        os.makedirs(self.log_dir, exist_ok=True)
        self.current_log_path = self._new_log_path()

    def _new_log_path(self) -> str:
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        return os.path.join(self.log_dir, f"invocations_{timestamp}_{uuid.uuid4().hex[:8]}.jsonl")

    def register_tool(self, tool: Tool) -> None:
        if tool.redact_params or tool.redact_result:
            self._redact_rules[tool.name] = {
                "param_keys": list(tool.redact_params),
                "redact_result": tool.redact_result,
            }

    # --- State transitions ---

    def create(
        self,
        tool_name: str,
        module_id: str,
        params: dict,
        safety_level: SafetyLevel,
        request_id: Optional[str] = None,
    ) -> InvocationRecord:
        record = InvocationRecord(
            invocation_id=str(uuid.uuid4()),
            tool_name=tool_name,
            module_id=module_id,
            params=params or {},
            safety_level=safety_level,
            created_at=datetime.now(),
            started_at=None,
            finished_at=None,
            status="created",
            result=None,
            error=None,
            request_id=request_id,
        )
        self._persist(record)
        return record

    def start(self, record: InvocationRecord) -> None:
        record.started_at = datetime.now()
        record.status = "started"
        self._persist(record)

    def complete(self, record: InvocationRecord, result: Any) -> None:
        record.finished_at = datetime.now()
        record.status = "completed"
        record.result = result
        self._persist(record)

    def fail(self, record: InvocationRecord, error: str) -> None:
        record.finished_at = datetime.now()
        record.status = "failed"
        record.error = error
        self._persist(record)

    def block(self, record: InvocationRecord, reason: str) -> None:
        record.status = "blocked"
        record.error = reason
        self._persist(record)

    # --- Record shaping ---

    def _redact(self, data: dict) -> dict:
        rules = self._redact_rules.get(data.get("tool_name", ""))
        if not rules:
            return data
        if isinstance(data.get("params"), dict):
            for key in rules["param_keys"]:
                if key in data["params"]:
                    data["params"][key] = REDACTED
        if rules["redact_result"] and data.get("result") is not None:
            data["result"] = REDACTED
        return data

    def _truncate(self, data: dict) -> dict:
        params = data.get("params")
        if params is not None:
            params_str = json.dumps(params, default=str)
            if len(params_str) > self.max_result_length:
                data["params"] = {"_truncated": True, "_size": len(params_str),
                                  "_preview": params_str[:self.max_result_length]}
        result = data.get("result")
        if result is not None:
            result_str = str(result)
            if len(result_str) > self.max_result_length:
                data["result"] = (result_str[:self.max_result_length]
                                  + f"... [TRUNCATED, {len(result_str)} chars total]")
        return data

    def _serialize(self, obj: Any) -> Any:
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.value
        if isinstance(obj, dict):
            return {str(k): self._serialize(v) for k, v in obj.items()}
        if isinstance(obj, (list, tuple, set)):
            return [self._serialize(v) for v in obj]
        return obj

    def _chain_hash(self, data_json: str) -> str:
        anchor = os.path.basename(self.current_log_path)
        chain_input = f"{anchor}:{self._last_hash or 'GENESIS'}:{data_json}"
        return hashlib.sha256(chain_input.encode("utf-8")).hexdigest()

    # --- Files ---

    def _rotate_if_needed(self) -> None:
        try:
            if (os.path.exists(self.current_log_path)
                    and os.path.getsize(self.current_log_path) >= self.max_log_size):
                self.current_log_path = self._new_log_path()
                self._last_hash = None
                self._cleanup_old_logs()
        except OSError as e:
            logger.debug("Rotation check failed: %s", e)

    def _cleanup_old_logs(self) -> None:
        try:
            log_files = sorted(
                (f for f in os.listdir(self.log_dir)
                 if f.startswith("invocations_") and f.endswith(".jsonl")),
                reverse=True,
            )
            for old_file in log_files[self.max_log_files:]:
                os.remove(os.path.join(self.log_dir, old_file))
                logger.info("Removed old audit log: %s", old_file)
        except OSError as e:
            logger.error("Audit log cleanup error: %s", e)

    def _persist(self, record: InvocationRecord) -> None:
        with self._lock:
            self._rotate_if_needed()

            data = self._truncate(self._redact(self._serialize(asdict(record))))
            chain_hash = self._chain_hash(json.dumps(data, default=str))
            data["_chain_hash"] = chain_hash
            self._last_hash = chain_hash
            line = json.dumps(data, default=str)

            try:
                with open(self.current_log_path, "a", encoding="utf-8") as f:
                    if os.name != "nt":
                        fcntl.flock(f.fileno(), fcntl.LOCK_EX)
                    try:
                        f.write(line + "\n")
                        f.flush()
                    finally:
                        if os.name != "nt":
                            fcntl.flock(f.fileno(), fcntl.LOCK_UN)
            except OSError as e:
                logger.error("Failed to persist invocation %s: %s", record.invocation_id, e)
