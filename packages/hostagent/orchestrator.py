"""
Change Orchestrator - Staged, idempotent, atomically-promoted apply

Flow (one transaction per request, serialized per configuration root):
    1. Validate request, compute fingerprint
    2. Skip if applied/{fingerprint} exists and force_apply is false
    3. Stage a full copy of the live root
    4. ADD / REMOVE / SYNCHRONIZE against the staging copy:
         run the convergence tool (progress tracked from its output),
         then persist the updated run list into staging
    5. Promote: live → backup, staging → live (rollback the first rename if
       the second fails)
    6. Write the fingerprint marker into the NEW live root

Safety:
- The live root is never written in place; on any failure before promotion
  staging is discarded and the live root is byte-identical to before
- apply() never raises; failures are reported in ChangeOutcome
- If promotion can neither complete nor roll back, the root is marked
  unavailable ({root}.fatal next to the root, so other agent processes and
  restarts see it too) and every later request is refused until clear_fatal()

Markers are per (operation, unit) and never removed: after ADD app3 then
REMOVE app3, a second ADD app3 is "already applied" unless force_apply is set.
"""

import json
import logging
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional, Union

from pydantic import ValidationError

from .applied import AppliedMarkerStore, fingerprint
from .config import AgentConfig
from .convergence import ConvergenceMode, ConvergenceTool, NullConvergenceTool
from .errors import (
    AgentError,
    ConfigRootUnavailableError,
    FatalPromotionError,
    InvalidRequestError,
    PromotionError
)
from .lock import ConfigRootLock
from .models import ChangeOperation, ChangeOutcome, ChangeRequest
from .process import ProcessExecutor
from .progress import LoggingStatusChannel, ProgressTracker, StatusChannel
from .runlist import DEFAULT, RunList, is_valid_unit, load_run_list, recipe_exists, save_run_list
from .staging import StagingSynchronizer, timestamp
from .transaction import TransactionContext, TransactionState

logger = logging.getLogger(__name__)

# Roots whose promotion failed fatally in this process, root -> reason
_fatal_lock = threading.Lock()
_fatal_roots: Dict[str, str] = {}


class ChangeOrchestrator:
    """
    Applies ChangeRequests to one live configuration root.

    Coordinates:
    - StagingSynchronizer: staging copy and overlay sync
    - RunList: run list mutation inside staging
    - ConvergenceTool: the external run, observed by ProgressTracker
    - AppliedMarkerStore: idempotency markers
    - ConfigRootLock: one transaction at a time per root
    """

    def __init__(
        self,
        config: AgentConfig,
        tool=None,
        synchronizer: Optional[StagingSynchronizer] = None,
        status_channel: Optional[StatusChannel] = None,
        executor: Optional[ProcessExecutor] = None
    ):
        """
        Initialize orchestrator.

        Args:
            config: Agent configuration (config_root is the live root)
            tool: Convergence tool (default: ConvergenceTool, or
                NullConvergenceTool when config.dry_run)
            synchronizer: Staging synchronizer
            status_channel: Receives progress events (default: log only)
            executor: Process executor shared by the default tool and synchronizer
        """
        self.config = config
        executor = executor or ProcessExecutor()

        if tool is None:
            tool = NullConvergenceTool() if config.dry_run else ConvergenceTool(config, executor)
        self.tool = tool
        self.synchronizer = synchronizer or StagingSynchronizer(config, executor)
        self.status_channel = status_channel or LoggingStatusChannel()

        self.markers = AppliedMarkerStore(config.config_root, config.applied_dir)
        self.lock = ConfigRootLock(
            config.config_root,
            timeout_seconds=config.lock_timeout_seconds,
            poll_seconds=config.lock_poll_seconds
        )

    # ==================== Dispatch interface ====================

    def accepts(self, request) -> bool:
        return isinstance(request, ChangeRequest)

    def process(self, request) -> ChangeOutcome:
        return self.apply(request)

    # ==================== Fatal state ====================

    @property
    def fatal_marker(self) -> Path:
        """Sibling of the root, so it survives the root going missing."""
        root = self.config.config_root
        return root.with_name(f"{root.name}.fatal")

    @property
    def fatal_reason(self) -> Optional[str]:
        with _fatal_lock:
            reason = _fatal_roots.get(str(self.config.config_root))
        if reason:
            return reason

        try:
            text = self.fatal_marker.read_text(encoding='utf-8')
        except FileNotFoundError:
            return None
        except OSError as e:
            return f"fatal marker {self.fatal_marker} present but unreadable: {e}"
        try:
            return json.loads(text).get("reason") or text
        except (ValueError, AttributeError):
            return text.strip() or f"fatal marker {self.fatal_marker} present"

    def clear_fatal(self):
        """Re-enable the root after an operator has repaired it."""
        reason = self.fatal_reason
        with _fatal_lock:
            _fatal_roots.pop(str(self.config.config_root), None)
        self.fatal_marker.unlink(missing_ok=True)
        if reason:
            logger.warning(f"Fatal state cleared for {self.config.config_root} (was: {reason})")

    def _mark_fatal(self, reason: str, context: TransactionContext):
        with _fatal_lock:
            _fatal_roots[str(self.config.config_root)] = reason

        record = {
            "reason": reason,
            "fingerprint": context.fingerprint,
            "backup_dir": str(context.backup_dir) if context.backup_dir else None,
            "staging_dir": str(context.staging_dir) if context.staging_dir else None,
            "pid": os.getpid(),
            "marked_at": datetime.utcnow().isoformat(),
        }
        try:
            self.fatal_marker.write_text(json.dumps(record, indent=2), encoding='utf-8')
        except OSError as e:
            logger.critical(f"Could not persist fatal marker {self.fatal_marker}: {e}")

    # ==================== Transaction ====================

    def apply(self, request: Union[ChangeRequest, dict]) -> ChangeOutcome:
        """
        Apply one request; never raises.

        Args:
            request: ChangeRequest, or its dict form from the transport

        Returns:
            ChangeOutcome (error_text is None on success)
        """
        label = "request"
        try:
            request = self._validate(request)
            label = f"{request.operation.value} {request.unit}"
            fp = fingerprint(request.operation, request.unit)
        except AgentError as e:
            logger.warning(f"Rejected {label}: {e}")
            return self._outcome(f"{label}: rejected", error=e, state=TransactionState.FAILED)

        context = TransactionContext(fingerprint=fp, operation=request.operation.value, unit=request.unit)

        try:
            self._check_available()
            with self.lock.hold(f"{label} [{fp[:12]}]"):
                self._check_available()
                return self._transact(request, context, label)
        except AgentError as e:
            logger.error(f"{label} [{fp}] failed before staging: {e}")
            return self._outcome(f"{label}: not applied", error=e, context=context)
        except Exception as e:
            logger.exception(f"{label} [{fp}] unexpected error (staging={context.staging_dir}): {e}")
            return self._outcome(f"{label}: not applied", error=AgentError(str(e)), context=context)

    def _transact(self, request: ChangeRequest, context: TransactionContext, label: str) -> ChangeOutcome:
        fp = context.fingerprint

        context.update_state(TransactionState.FINGERPRINT_CHECK)
        if self.markers.is_applied(fp) and not request.force_apply:
            context.update_state(TransactionState.SHORT_CIRCUIT_SUCCESS, "already applied")
            logger.info(f"{label} already applied [{fp}], skipping")
            return self._outcome(f"{label}: already applied", context=context)

        if request.force_apply and self.markers.is_applied(fp):
            logger.info(f"{label} already applied [{fp}], re-applying (force_apply)")

        try:
            self._validate_inputs(request)
        except AgentError as e:
            context.error_message = str(e)
            context.update_state(TransactionState.FAILED, str(e))
            logger.warning(f"Rejected {label} [{fp}]: {e}")
            return self._outcome(f"{label}: rejected", error=e, context=context)

        # Stage + apply
        context.update_state(TransactionState.STAGING)
        try:
            context.staging_dir = self.synchronizer.create_staging(fp)
            context.update_state(TransactionState.APPLYING, str(context.staging_dir))
            self._apply_operation(request, context)
        except Exception as e:
            return self._fail(context, label, e)

        # Promote
        context.update_state(TransactionState.PROMOTING)
        try:
            self._promote(context)
        except FatalPromotionError as e:
            context.error_message = str(e)
            context.update_state(TransactionState.FATAL, str(e))
            self._mark_fatal(str(e), context)
            logger.critical(
                f"{label} [{fp}] left {self.config.config_root} MISSING; "
                f"backup={context.backup_dir} staging={context.staging_dir}: {e}. "
                f"Operator intervention required."
            )
            return self._outcome(f"{label}: promotion failed", error=e, context=context)
        except PromotionError as e:
            if e.rolled_back:
                context.update_state(TransactionState.ROLLED_BACK, str(e))
            return self._fail(context, label, e)

        context.update_state(TransactionState.DONE, f"backup at {context.backup_dir}")
        logger.info(f"{label} [{fp}] promoted, previous root kept at {context.backup_dir}")

        try:
            self.markers.record(fp, request)
        except OSError as e:
            logger.error(f"{label} [{fp}] applied but marker not written: {e}")
            return self._outcome(
                f"{label}: applied",
                error=AgentError(f"applied, but fingerprint marker not written: {e}", code="MARKER_FAILED"),
                context=context
            )

        return self._outcome(f"{label}: applied", context=context)

    def _fail(self, context: TransactionContext, label: str, error: Exception) -> ChangeOutcome:
        """Discard staging, leave the live root alone, report."""
        context.error_message = str(error)
        logger.error(
            f"{label} [{context.fingerprint}] failed in {context.state.value} "
            f"(staging={context.staging_dir}): {error}"
        )
        if isinstance(error, AgentError) and getattr(error, "output_tail", ""):
            logger.error(f"{label} [{context.fingerprint}] tool output tail:\n{error.output_tail}")

        context.update_state(TransactionState.DISCARDING)
        if context.staging_dir is not None:
            try:
                self.synchronizer.discard(context.staging_dir)
            except AgentError as discard_error:
                context.error_message += f"; discard failed: {discard_error}"
                logger.error(
                    f"{label} [{context.fingerprint}] could not discard {context.staging_dir}: {discard_error}"
                )
        context.update_state(TransactionState.FAILED, context.error_message)

        if not isinstance(error, AgentError):
            error = AgentError(str(error))
        return self._outcome(f"{label}: not applied", error=error, context=context)

    # ==================== Validation ====================

    def _validate(self, request) -> ChangeRequest:
        """Operation and unit checks; nothing touched yet."""
        if isinstance(request, dict):
            try:
                request = ChangeRequest.model_validate(request)
            except ValidationError as e:
                raise InvalidRequestError(f"invalid request: {e.errors()[0].get('msg', e)}")
        if not isinstance(request, ChangeRequest):
            raise InvalidRequestError(f"unsupported request type: {type(request).__name__}")

        if not request.unit:
            raise InvalidRequestError("missing unit")
        if not is_valid_unit(request.unit):
            raise InvalidRequestError(f"invalid unit name: {request.unit!r}")
        return request

    def _validate_inputs(self, request: ChangeRequest):
        """ADD needs an overlay dir and a default recipe (overlay or live)."""
        if request.operation != ChangeOperation.ADD:
            return
        if not request.source_path:
            raise InvalidRequestError(f"ADD {request.unit}: missing source path")
        source = Path(request.source_path)
        if not source.is_dir():
            raise InvalidRequestError(f"ADD {request.unit}: source path is not a directory: {source}")
        if not (recipe_exists(source, request.unit, DEFAULT)
                or recipe_exists(self.config.config_root, request.unit, DEFAULT)):
            raise InvalidRequestError(
                f"ADD {request.unit}: no default recipe, unit cannot be activated"
            )

    def _check_available(self):
        reason = self.fatal_reason
        if reason:
            raise ConfigRootUnavailableError(
                f"{self.config.config_root} needs operator intervention: {reason}"
            )

    # ==================== Operations ====================

    def _apply_operation(self, request: ChangeRequest, context: TransactionContext):
        staging = context.staging_dir
        name = self.config.run_list_file
        current = load_run_list(staging, name)

        if request.operation == ChangeOperation.ADD:
            self.synchronizer.sync(Path(request.source_path), staging)
            updated = current.insert_app(request.unit, staging)
            self._run_tool(request, context, ConvergenceMode.INSTALL, updated)
            save_run_list(staging, updated, name)

        elif request.operation == ChangeOperation.REMOVE:
            if not current.contains_unit(request.unit):
                logger.warning(f"REMOVE {request.unit}: unit not in run list, running uninstall anyway")
            self._run_tool(request, context, ConvergenceMode.UNINSTALL, current)
            save_run_list(staging, current.remove_unit(request.unit), name)

        elif request.operation == ChangeOperation.SYNCHRONIZE:
            self._run_tool(request, context, ConvergenceMode.SYNCHRONIZE, current)

        else:
            raise InvalidRequestError(f"unknown operation: {request.operation!r}")

    def _run_tool(self, request: ChangeRequest, context: TransactionContext, mode: ConvergenceMode, run_list: RunList):
        tracker = ProgressTracker.for_run_list(
            run_list,
            request,
            self.status_channel,
            start_marker=self.config.start_marker,
            complete_marker=self.config.complete_marker
        )
        log_path = None
        if self.config.log_dir is not None:
            log_path = self.config.log_dir / f"{timestamp()}-{context.fingerprint[:12]}.log"

        self.tool.run(context.staging_dir, mode, request.unit, tracker=tracker, log_path=log_path)

    # ==================== Promotion ====================

    def _rename(self, src: Path, dst: Path):
        os.rename(src, dst)

    def _promote(self, context: TransactionContext):
        """
        live → backup, staging → live.

        Raises:
            PromotionError: First rename failed (nothing moved), or second
                failed and the backup was renamed back (rolled_back=True)
            FatalPromotionError: Second rename and the rollback both failed
        """
        root = self.config.config_root
        backup = root.with_name(f"{root.name}.backup-{timestamp()}")

        try:
            self._rename(root, backup)
        except OSError as e:
            raise PromotionError(f"cannot move {root} to {backup}: {e}")
        context.backup_dir = backup

        try:
            self._rename(context.staging_dir, root)
        except OSError as e:
            logger.error(f"Cannot move {context.staging_dir} to {root}: {e}; rolling back")
            try:
                self._rename(backup, root)
            except OSError as rollback_error:
                raise FatalPromotionError(
                    f"cannot move {context.staging_dir} to {root} ({e}) "
                    f"and cannot restore {backup} ({rollback_error})"
                )
            context.backup_dir = None
            raise PromotionError(f"cannot move {context.staging_dir} to {root}: {e}", rolled_back=True)

    # ==================== Outcome ====================

    def _outcome(
        self,
        text: str,
        error: Optional[AgentError] = None,
        context: Optional[TransactionContext] = None,
        state: Optional[TransactionState] = None
    ) -> ChangeOutcome:
        if state is None and context is not None:
            state = context.state
        return ChangeOutcome(
            result_text=text,
            error_text=str(error) if error is not None else None,
            error_code=error.code if error is not None else None,
            fingerprint=context.fingerprint if context is not None else None,
            state=state.value if state is not None else None,
        )
