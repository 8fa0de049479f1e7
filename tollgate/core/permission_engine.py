"""Permission engine: decides whether a tool invocation may run.

``PermissionManager.check_permission`` is a pure, synchronous computation over
an immutable ``RuleSet`` snapshot. The checks run in a fixed order:

1. deny rules (every simple command of a shell invocation, in every mode)
2. bypassPermissions mode
3. plan mode restrictions
4. tools that are not restricted at all
5. built-in safe shell commands confined to the workspace
6. acceptEdits mode for file-mutation tools inside the workspace
7. allow rules (session rules included); shell commands need every part covered
8. otherwise ask the human

State only changes through the explicit mutation methods (mode changes,
``add_rule``, ``reload``), which swap values under a lock.
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Callable, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from tollgate.core.approval import PermissionRequest
from tollgate.core.config import ConfigScope
from tollgate.core.errors import TrustStoreError
from tollgate.core.permissions import (
    PermissionBehavior,
    PermissionDecision,
    PermissionMode,
    RuleSet,
    ToolPermissionContext,
    next_permission_mode,
)
from tollgate.core.tool import ToolCatalog, ToolDescriptor, ToolKind, default_catalog
from tollgate.core.trust_store import TrustedCommandEntry, TrustStore
from tollgate.utils.log import get_logger
from tollgate.utils.permissions.command_decomposer import (
    SimpleCommand,
    decompose,
    iter_commands,
)
from tollgate.utils.permissions.path_safety import is_inside_any, resolve_real_path
from tollgate.utils.permissions.prefix_heuristic import is_dangerous_command, suggest_all
from tollgate.utils.permissions.rule_syntax import (
    ActionDescriptor,
    PermissionRule,
    RuleKind,
    find_matching_rule,
    parse_permission_rule,
    try_parse_permission_rule,
)
from tollgate.utils.permissions.safe_commands import is_out_of_bounds, is_safe_command

logger = get_logger()

ModeChangeCallback = Callable[[PermissionMode, PermissionMode], None]

# Tools refused outright in plan mode, in addition to shell tools.
_PLAN_MODE_FORBIDDEN_TOOLS = frozenset({"Delete"})


def _shell_command_text(descriptor: ToolDescriptor, tool_input: Mapping[str, Any]) -> str:
    return descriptor.extract_argument(tool_input)


class PermissionManager:
    """Owns the live rule snapshot and permission mode for one agent process."""

    def __init__(
        self,
        rule_set: Optional[RuleSet] = None,
        *,
        workdir: Path,
        catalog: Optional[ToolCatalog] = None,
        mode: Optional[PermissionMode] = None,
        additional_directories: Iterable[Path] = (),
        trust_store: Optional[TrustStore] = None,
        plan_file_path: Optional[Path] = None,
        on_mode_change: Optional[ModeChangeCallback] = None,
    ) -> None:
        self._lock = threading.RLock()
        self._workdir = Path(workdir)
        self._catalog = catalog or default_catalog()
        self._trust_store = trust_store
        if rule_set is None:
            rule_set = trust_store.load() if trust_store is not None else RuleSet()
        self._rule_set = rule_set
        self._temporary_rules: Tuple[PermissionRule, ...] = ()
        self._additional_directories = tuple(Path(p) for p in additional_directories)
        self._cli_mode = mode
        self._mode = mode or rule_set.default_mode or PermissionMode.DEFAULT
        self._mode_before_plan: Optional[PermissionMode] = None
        self._plan_file_path = Path(plan_file_path) if plan_file_path else None
        self._on_mode_change = on_mode_change

    # ------------------------------------------------------------------
    # State accessors
    # ------------------------------------------------------------------

    @property
    def mode(self) -> PermissionMode:
        return self._mode

    @property
    def rule_set(self) -> RuleSet:
        return self._rule_set

    @property
    def temporary_rules(self) -> Tuple[PermissionRule, ...]:
        return self._temporary_rules

    @property
    def workdir(self) -> Path:
        return self._workdir

    @property
    def catalog(self) -> ToolCatalog:
        return self._catalog

    @property
    def plan_file_path(self) -> Optional[Path]:
        return self._plan_file_path

    def create_context(
        self,
        tool_name: str,
        tool_input: Mapping[str, Any],
        mode: Optional[PermissionMode] = None,
    ) -> ToolPermissionContext:
        """Build a context from the manager's current state."""
        return ToolPermissionContext(
            tool_name=tool_name,
            tool_input=dict(tool_input),
            mode=mode or self._mode,
            workdir=self._workdir,
            additional_directories=self._additional_directories
            + self._rule_set.additional_directories,
            plan_file_path=self._plan_file_path,
        )

    # ------------------------------------------------------------------
    # Decision
    # ------------------------------------------------------------------

    def check_permission(self, context: ToolPermissionContext) -> PermissionDecision:
        """Decide whether the invocation in ``context`` may run."""
        try:
            decision = self._evaluate(context)
        except (OSError, RuntimeError, ValueError, TypeError) as exc:
            logger.warning(
                "[permissions] Permission check failed; asking instead: %s: %s",
                type(exc).__name__,
                exc,
                extra={"tool": context.tool_name},
            )
            return PermissionDecision.ask(
                f"Could not evaluate permissions for {context.tool_name}; approval required"
            )
        logger.debug(
            "[permissions] %s -> %s",
            context.tool_name,
            decision.behavior.value,
            extra={
                "mode": context.mode.value,
                "reason": decision.reason,
                "rule": decision.rule.pattern if decision.rule else None,
            },
        )
        return decision

    def _safe_roots(self, context: ToolPermissionContext) -> List[Path]:
        roots = [*context.safe_roots]
        for directory in (*self._additional_directories, *self._rule_set.additional_directories):
            if directory not in roots:
                roots.append(directory)
        return roots

    def _commands(
        self, context: ToolPermissionContext, descriptor: ToolDescriptor
    ) -> List[SimpleCommand]:
        if descriptor.kind is not ToolKind.SHELL:
            return []
        return decompose(_shell_command_text(descriptor, context.tool_input))

    def _command_action(
        self, context: ToolPermissionContext, command: SimpleCommand
    ) -> ActionDescriptor:
        return ActionDescriptor(
            tool_name=context.tool_name, argument=command.text, cwd=context.command_cwd
        )

    def _tool_action(
        self, context: ToolPermissionContext, descriptor: ToolDescriptor
    ) -> ActionDescriptor:
        path = descriptor.extract_path(context.tool_input)
        return ActionDescriptor(
            tool_name=context.tool_name,
            argument=descriptor.extract_argument(context.tool_input),
            path=path,
            cwd=context.workdir,
        )

    def _deny_actions(
        self,
        context: ToolPermissionContext,
        descriptor: ToolDescriptor,
        commands: Sequence[SimpleCommand],
    ) -> List[ActionDescriptor]:
        if descriptor.kind is not ToolKind.SHELL:
            return [self._tool_action(context, descriptor)]
        actions: List[ActionDescriptor] = []
        for command in iter_commands(commands):
            actions.append(self._command_action(context, command))
            # Quoting must not hide a denied program: `"rm" -rf /` runs rm.
            unquoted = " ".join(command.argv)
            if unquoted != command.text:
                actions.append(
                    ActionDescriptor(context.tool_name, unquoted, cwd=context.command_cwd)
                )
        whole = " ".join(_shell_command_text(descriptor, context.tool_input).split())
        actions.append(ActionDescriptor(context.tool_name, whole, cwd=context.command_cwd))
        return actions

    def _evaluate(self, context: ToolPermissionContext) -> PermissionDecision:
        descriptor = self._catalog.get(context.tool_name)
        rule_set = self._rule_set
        allow_rules = rule_set.allow + self._temporary_rules
        commands = self._commands(context, descriptor)

        # 1. Deny rules win over everything, including bypass mode.
        for action in self._deny_actions(context, descriptor, commands):
            deny_rule = find_matching_rule(rule_set.deny, action)
            if deny_rule is not None:
                return PermissionDecision.deny(
                    f"Permission denied by rule: {deny_rule.pattern}", deny_rule
                )

        # 2. Bypass
        if context.mode is PermissionMode.BYPASS_PERMISSIONS:
            return PermissionDecision.allow("Permissions bypassed")

        # 3. Plan mode
        if context.mode is PermissionMode.PLAN:
            plan_decision = self._plan_mode_decision(context, descriptor)
            if plan_decision is not None:
                return plan_decision

        # 4. Unrestricted tools
        if not descriptor.restricted:
            return PermissionDecision.allow(f"{context.tool_name} does not require permission")

        roots = self._safe_roots(context)
        cwd = context.command_cwd

        # 5. Built-in safe commands
        if commands and all(is_safe_command(command, roots, cwd) for command in commands):
            return PermissionDecision.allow("Built-in safe command inside the workspace")

        # 6. acceptEdits
        path = descriptor.extract_path(context.tool_input)
        if context.mode is PermissionMode.ACCEPT_EDITS and descriptor.mutates_files and path:
            if is_inside_any(path, roots, base=context.workdir):
                return PermissionDecision.allow("File edits are auto-approved in acceptEdits mode")

        # 7. Allow rules
        if descriptor.kind is ToolKind.SHELL:
            return self._shell_allow_decision(context, commands, allow_rules, roots)

        rule = find_matching_rule(allow_rules, self._tool_action(context, descriptor))
        if rule is not None:
            return PermissionDecision.allow(f"Allowed by rule: {rule.pattern}", rule)

        # 8. Ask
        if path:
            if context.mode is PermissionMode.ACCEPT_EDITS and descriptor.mutates_files:
                return PermissionDecision.ask(
                    f"{context.tool_name} on {path} is outside the workspace and requires approval"
                )
            return PermissionDecision.ask(f"{context.tool_name} on {path} requires approval")
        return PermissionDecision.ask(f"{context.tool_name} requires approval")

    def _shell_allow_decision(
        self,
        context: ToolPermissionContext,
        commands: Sequence[SimpleCommand],
        allow_rules: Sequence[PermissionRule],
        roots: Sequence[Path],
    ) -> PermissionDecision:
        if not commands:
            return PermissionDecision.ask(f"Empty {context.tool_name} command requires approval")

        cwd = context.command_cwd
        tool_rules = [
            rule
            for rule in allow_rules
            if rule.kind is RuleKind.TOOL and rule.tool_name == context.tool_name
        ]
        unmatched: List[SimpleCommand] = []
        matched: Optional[PermissionRule] = None
        for command in commands:
            if command.needs_review:
                # Substitutions and broken quoting are only covered by whole-tool trust.
                if tool_rules:
                    matched = matched or tool_rules[0]
                else:
                    unmatched.append(command)
                continue
            if is_safe_command(command, roots, cwd):
                continue
            rule = find_matching_rule(allow_rules, self._command_action(context, command))
            if rule is None:
                unmatched.append(command)
            elif matched is None:
                matched = rule

        if not unmatched:
            reason = f"Allowed by rule: {matched.pattern}" if matched else "All parts allowed"
            return PermissionDecision.allow(reason, matched)

        parts = "; ".join(command.text for command in unmatched)
        if any(command.has_substitution for command in unmatched):
            return PermissionDecision.ask(
                f"{context.tool_name} command uses command substitution and requires approval: "
                f"{parts}"
            )
        return PermissionDecision.ask(f"{context.tool_name} command requires approval: {parts}")

    def _plan_mode_decision(
        self, context: ToolPermissionContext, descriptor: ToolDescriptor
    ) -> Optional[PermissionDecision]:
        if descriptor.kind is ToolKind.SHELL or context.tool_name in _PLAN_MODE_FORBIDDEN_TOOLS:
            return PermissionDecision.deny(f"{context.tool_name} is not allowed in plan mode")
        if not descriptor.mutates_files:
            return None
        plan_file = context.plan_file_path
        path = descriptor.extract_path(context.tool_input)
        if plan_file is None:
            return PermissionDecision.deny("File changes are not allowed in plan mode")
        if path and self._same_path(path, plan_file, context.workdir):
            return PermissionDecision.allow("Writing the plan file")
        return PermissionDecision.deny(
            f"Only the plan file {plan_file} can be modified in plan mode"
        )

    @staticmethod
    def _same_path(path: str, other: Path, base: Path) -> bool:
        try:
            return resolve_real_path(path, base) == resolve_real_path(other, base)
        except (OSError, RuntimeError, ValueError):
            return False

    # ------------------------------------------------------------------
    # Confirmation support
    # ------------------------------------------------------------------

    def suggest_rules(self, context: ToolPermissionContext) -> List[PermissionRule]:
        """Rules to offer for "approve and remember". Proposals only."""
        descriptor = self._catalog.get(context.tool_name)
        if descriptor.kind is ToolKind.SHELL:
            roots = self._safe_roots(context)
            cwd = context.command_cwd
            pending = [
                command
                for command in self._commands(context, descriptor)
                if not is_safe_command(command, roots, cwd)
            ]
            return suggest_all(pending)

        argument = descriptor.extract_argument(context.tool_input)
        if not argument:
            return []
        rule = try_parse_permission_rule(f"{context.tool_name}({argument})", catalog=self._catalog)
        return [rule] if rule is not None else []

    def allows_remember(self, context: ToolPermissionContext) -> bool:
        """False when no standing rule should be offered for this invocation."""
        descriptor = self._catalog.get(context.tool_name)
        if descriptor.kind is not ToolKind.SHELL:
            return True
        roots = self._safe_roots(context)
        cwd = context.command_cwd
        for command in self._commands(context, descriptor):
            if (
                command.needs_review
                or is_dangerous_command(command)
                or is_out_of_bounds(command, roots, cwd)
            ):
                return False
        return True

    def build_request(
        self, context: ToolPermissionContext, decision: PermissionDecision
    ) -> PermissionRequest:
        allow_remember = self.allows_remember(context)
        return PermissionRequest(
            context=context,
            reason=decision.reason or f"{context.tool_name} requires approval",
            suggested_rules=tuple(self.suggest_rules(context)) if allow_remember else (),
            allow_remember=allow_remember,
        )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def _swap_mode(self, mode: PermissionMode) -> None:
        previous = self._mode
        self._mode = mode
        if previous is mode:
            return
        logger.info(
            "[permissions] Permission mode changed: %s -> %s", previous.value, mode.value
        )
        if self._on_mode_change is not None:
            self._on_mode_change(previous, mode)

    def set_mode(self, mode: PermissionMode) -> None:
        if mode is PermissionMode.PLAN:
            raise ValueError("Use enter_plan_mode() to switch to plan mode")
        with self._lock:
            if self._mode is PermissionMode.PLAN:
                self._plan_file_path = None
                self._mode_before_plan = None
            self._swap_mode(mode)

    def cycle_mode(self) -> PermissionMode:
        """Advance to the next mode in the cycle and return it."""
        with self._lock:
            target = next_permission_mode(self._mode)
            if self._mode is PermissionMode.PLAN:
                self._plan_file_path = None
                self._mode_before_plan = None
            self._swap_mode(target)
            return target

    def enter_plan_mode(self, plan_file: Path) -> None:
        with self._lock:
            if self._mode is not PermissionMode.PLAN:
                self._mode_before_plan = self._mode
            self._plan_file_path = Path(plan_file)
            self._swap_mode(PermissionMode.PLAN)

    def exit_plan_mode(self, mode: Optional[PermissionMode] = None) -> PermissionMode:
        with self._lock:
            if self._mode is not PermissionMode.PLAN:
                return self._mode
            target = mode or self._mode_before_plan or PermissionMode.DEFAULT
            if target is PermissionMode.PLAN:
                target = PermissionMode.DEFAULT
            self._plan_file_path = None
            self._mode_before_plan = None
            self._swap_mode(target)
            return target

    def _coerce_rule(self, rule: Union[PermissionRule, str]) -> PermissionRule:
        if isinstance(rule, PermissionRule):
            return rule
        return parse_permission_rule(rule, catalog=self._catalog)

    def add_temporary_rule(self, rule: Union[PermissionRule, str]) -> PermissionRule:
        """Allow ``rule`` for the rest of this session without persisting it."""
        parsed = self._coerce_rule(rule)
        with self._lock:
            if parsed not in self._temporary_rules:
                self._temporary_rules = self._temporary_rules + (parsed,)
        return parsed

    def clear_temporary_rules(self) -> None:
        with self._lock:
            self._temporary_rules = ()

    def add_rule(
        self,
        rule: Union[PermissionRule, str],
        scope: ConfigScope,
        behavior: PermissionBehavior = PermissionBehavior.ALLOW,
    ) -> TrustedCommandEntry:
        """Persist ``rule`` to ``scope`` and apply it to future checks.

        If persistence fails the rule still applies for this session and the
        ``TrustStoreError`` is re-raised so the caller can report it.
        """
        parsed = self._coerce_rule(rule)
        try:
            if self._trust_store is None:
                raise TrustStoreError("No trust store is configured for this session")
            entry = self._trust_store.save(scope, parsed, behavior)
        except TrustStoreError as exc:
            logger.warning(
                "[permissions] Rule kept for this session only: %s",
                exc,
                extra={"rule": parsed.pattern, "scope": scope.value},
            )
            if behavior is PermissionBehavior.ALLOW:
                self.add_temporary_rule(parsed)
            else:
                with self._lock:
                    self._rule_set = self._rule_set.with_rule(parsed, behavior)
            raise
        with self._lock:
            self._rule_set = self._rule_set.with_rule(parsed, behavior)
        return entry

    def reload(self, rule_set: Optional[RuleSet] = None) -> RuleSet:
        """Swap in a new snapshot, re-reading the trust store when none is given."""
        if rule_set is None:
            if self._trust_store is None:
                return self._rule_set
            rule_set = self._trust_store.load()
        with self._lock:
            previous_default = self._rule_set.default_mode
            self._rule_set = rule_set
            if (
                self._cli_mode is None
                and rule_set.default_mode != previous_default
                and self._mode is not PermissionMode.PLAN
            ):
                self._swap_mode(rule_set.default_mode or PermissionMode.DEFAULT)
        return rule_set


__all__ = ["ModeChangeCallback", "PermissionManager"]
