"""Action catalog, id resolution, scope enforcement and template expansion."""

from __future__ import annotations

import logging
import re
import shlex
from collections.abc import Iterable, Mapping, Sequence
from importlib import resources
from pathlib import Path
from typing import Any, Protocol

import yaml
from pydantic import ValidationError

from .constants import DEFAULT_ACTIONS_RESOURCE, SCOPE_REQUIRED_KEYS
from .errors import ErrorCode, GitGraphError
from .file_manager import FileManager
from .models import (
    ActionContext,
    ActionDef,
    ActionScope,
    ContinuationPolicy,
    ExpandedPlan,
    PlanEntry,
    UnresolvedPlaceholder,
)
from .templates import (
    ConfigLookup,
    ContextRef,
    ExecLookup,
    Literal,
    Node,
    Positional,
    Template,
    parse_template,
)

logger = logging.getLogger(__name__)

POLICY_BY_OPERATOR = {
    "&&": ContinuationPolicy.RUN_NEXT_ON_SUCCESS,
    "||": ContinuationPolicy.RUN_NEXT_ON_FAILURE,
    ";": ContinuationPolicy.UNCONDITIONAL,
}
_SLUG_PATTERN = re.compile(r"[^a-z0-9]+")


class PlaceholderSource(Protocol):
    """Collaborator answering dynamic placeholders."""

    def config_value(self, key: str) -> str | None: ...

    def exec_helper(self, args: Sequence[str]) -> str: ...


def slugify(text: str) -> str:
    return _SLUG_PATTERN.sub("-", text.lower()).strip("-")


class ActionCatalog:
    """Ordered set of action definitions addressable by id or alias."""

    def __init__(self, actions: Iterable[ActionDef] = ()) -> None:
        self._actions: dict[str, ActionDef] = {}
        self._aliases: dict[str, str] = {}
        self._templates: dict[str, Template] = {}
        for action in actions:
            self._add(action, replace=False)

    @classmethod
    def load_defaults(cls) -> ActionCatalog:
        text = resources.files("gitgraph").joinpath(DEFAULT_ACTIONS_RESOURCE).read_text(encoding="utf-8")
        return cls(parse_catalog(yaml.safe_load(text), origin=DEFAULT_ACTIONS_RESOURCE))

    @classmethod
    def load(
        cls,
        overrides_path: Path | None = None,
        file_manager: FileManager | None = None,
    ) -> ActionCatalog:
        """Load the built-in catalog and merge user definitions from ``overrides_path``."""
        catalog = cls.load_defaults()
        if overrides_path is None:
            return catalog
        overrides = load_user_actions(overrides_path, file_manager)
        if not overrides:
            return catalog
        return catalog.merged_with(overrides)

    def merged_with(self, overrides: Iterable[ActionDef]) -> ActionCatalog:
        """Return a new catalog with ``overrides`` winning on id and alias conflicts."""
        merged = ActionCatalog(self._actions.values())
        overrides = list(overrides)
        # Validate the user set on its own first so conflicts inside it are reported.
        ActionCatalog(overrides)
        for action in overrides:
            merged._add(action, replace=True)
        logger.info("Merged %d user actions into catalog", len(overrides))
        return merged

    def __len__(self) -> int:
        return len(self._actions)

    def __contains__(self, action_id: object) -> bool:
        return action_id in self._actions

    def for_scope(self, scope: ActionScope | str | None = None) -> list[ActionDef]:
        if scope is None:
            return list(self._actions.values())
        wanted = ActionScope(scope)
        return [action for action in self._actions.values() if action.scope == wanted]

    def snapshot(self) -> list[dict[str, Any]]:
        return [action.model_dump(mode="json") for action in self._actions.values()]

    def template_for(self, action: ActionDef) -> Template:
        template = self._templates.get(action.id)
        if template is None or template.source != action.template:
            template = parse_template(action.template)
        return template

    def resolve_id(self, id_or_alias: str, context: ActionContext | None = None) -> ActionDef:
        """Resolve a canonical id, an alias, or a short id to an action definition."""
        key = id_or_alias.strip()
        if key in self._actions:
            return self._actions[key]
        if key in self._aliases:
            return self._actions[self._aliases[key]]

        if key and ":" not in key:
            lowered = key.lower()
            stages = (
                lambda action: action.id.lower().endswith(f":{lowered}"),
                lambda action: slugify(action.title) == lowered,
                lambda action: self._command_word(action).lower() == lowered,
            )
            for stage in stages:
                candidates = [action for action in self._actions.values() if stage(action)]
                if candidates:
                    return min(candidates, key=lambda action: self._rank(action, context))

        raise GitGraphError(
            ErrorCode.UNKNOWN_ACTION_ID,
            f"Unknown action id: {id_or_alias}",
            "List available actions and use a canonical id or alias.",
            {"action_id": id_or_alias},
        )

    def check_scope(self, action: ActionDef, context: ActionContext) -> None:
        values = context.placeholder_values()
        missing: list[str] = []
        for key in SCOPE_REQUIRED_KEYS[action.scope.value]:
            if key == "confirmed":
                if not context.confirmed:
                    missing.append(key)
            elif not values.get(key, "").strip():
                missing.append(key)
        if missing:
            raise GitGraphError(
                ErrorCode.SCOPE_VIOLATION,
                f"Action {action.id} ({action.scope.value}) is missing {', '.join(missing)}",
                "Provide the context required by the action scope.",
                {"action_id": action.id, "scope": action.scope.value, "missing_keys": missing},
            )

    def expand(
        self,
        action: ActionDef | str,
        context: ActionContext,
        source: PlaceholderSource | None = None,
        strict: bool = True,
    ) -> ExpandedPlan:
        """Expand an action into an ordered plan of commands.

        In strict mode any dynamic placeholder failure raises. With
        ``strict=False`` failed lookups keep their marker in the command and
        are listed on the plan as unresolved.
        """
        definition = action if isinstance(action, ActionDef) else self.resolve_id(action, context)
        self.check_scope(definition, context)
        self._check_options(definition, context)

        expander = _Expander(definition, context, source, strict)
        template = self.template_for(definition)
        entries: list[PlanEntry] = []
        last = len(template.fragments) - 1
        for index, fragment in enumerate(template.fragments):
            command, unresolved = expander.render(fragment.nodes)
            command = command.strip()
            if index == last:
                flags, flag_unresolved = expander.option_flags()
                if flags:
                    command = f"{command} {flags}"
                unresolved.extend(flag_unresolved)
            policy = POLICY_BY_OPERATOR[fragment.operator] if fragment.operator else ContinuationPolicy.RUN_NEXT
            entries.append(PlanEntry(command=command, policy=policy, unresolved=unresolved))

        plan = ExpandedPlan(
            action_id=definition.id,
            scope=definition.scope,
            entries=entries,
            unresolved=expander.unresolved,
            ignore_errors=definition.ignore_errors,
        )
        logger.debug(
            "Expanded action %s into %d entries (unresolved=%d)",
            definition.id,
            len(entries),
            len(plan.unresolved),
        )
        return plan

    def ensure_runnable(self, plan: ExpandedPlan) -> ExpandedPlan:
        if plan.unresolved:
            first = plan.unresolved[0]
            raise GitGraphError(
                ErrorCode.DYNAMIC_PLACEHOLDER_FAILED,
                f"Action {plan.action_id} has unresolved placeholders",
                "Resolve dynamic placeholders before running the action.",
                {
                    "action_id": plan.action_id,
                    "kind": first.kind,
                    "key": first.key,
                    "unresolved": [item.marker for item in plan.unresolved],
                },
            )
        return plan

    def _add(self, action: ActionDef, replace: bool) -> None:
        template = parse_template(action.template)
        if action.id in self._actions and not replace:
            raise _catalog_error(f"Duplicate action id {action.id!r}", action.id)
        if not replace and action.id in self._aliases:
            raise _catalog_error(f"Action id {action.id!r} clashes with an alias", action.id)

        previous = self._actions.get(action.id)
        if previous is not None:
            for alias in previous.aliases:
                if self._aliases.get(alias) == action.id:
                    del self._aliases[alias]
        if replace:
            self._aliases.pop(action.id, None)

        for alias in action.aliases:
            owner = self._aliases.get(alias)
            if alias in self._actions and alias != action.id:
                raise _catalog_error(f"Alias {alias!r} clashes with an action id", action.id)
            if owner is not None and owner != action.id and not replace:
                raise _catalog_error(f"Alias {alias!r} is already used by {owner!r}", action.id)
            self._aliases[alias] = action.id

        self._actions[action.id] = action
        self._templates[action.id] = template

    def _check_options(self, action: ActionDef, context: ActionContext) -> None:
        known = {option.id for option in action.options} | {option.flag for option in action.options}
        unknown = [option for option in context.enabled_options if option not in known]
        if unknown:
            raise GitGraphError(
                ErrorCode.INVALID_INPUT,
                f"Unknown options for action {action.id}: {', '.join(unknown)}",
                "Use option ids listed for the action.",
                {"action_id": action.id, "options": unknown},
            )

    def _command_word(self, action: ActionDef) -> str:
        words = self.template_for(action).leading_words()
        if words and words[0] == "git":
            words = words[1:]
        return words[0] if words else ""

    def _rank(self, action: ActionDef, context: ActionContext | None) -> tuple[int, int, int]:
        template = self.template_for(action)
        missing = 0
        values = context.placeholder_values() if context is not None else {}
        args = context.args if context is not None else []
        for name in template.context_names():
            if name not in values:
                missing += 1
        for position in template.positional_indices():
            if position > len(args) and position > len(action.params):
                missing += 1
        return missing, int(template.composite), len(action.params)


class _Expander:
    def __init__(
        self,
        action: ActionDef,
        context: ActionContext,
        source: PlaceholderSource | None,
        strict: bool,
    ) -> None:
        self.action = action
        self.context = context
        self.values = context.placeholder_values()
        self.source = source
        self.strict = strict
        self.unresolved: list[UnresolvedPlaceholder] = []
        self._lookups: dict[str, str] = {}

    def render(self, nodes: Sequence[Node], allow_positional: bool = True) -> tuple[str, list[str]]:
        parts: list[str] = []
        unresolved: list[str] = []
        for node in nodes:
            if isinstance(node, Literal):
                parts.append(node.text)
            elif isinstance(node, ContextRef):
                parts.append(self._context_value(node))
            elif isinstance(node, Positional):
                if allow_positional:
                    parts.append(self._positional(node))
                else:
                    parts.append(node.marker)
            else:
                value = self._dynamic(node)
                if value is None:
                    parts.append(node.marker)
                    unresolved.append(node.marker)
                else:
                    parts.append(value)
        return "".join(parts), unresolved

    def option_flags(self) -> tuple[str, list[str]]:
        enabled = set(self.context.enabled_options)
        flags: list[str] = []
        unresolved: list[str] = []
        for option in self.action.options:
            if option.default_active or option.id in enabled or option.flag in enabled:
                rendered, missing = self._render_source(option.flag)
                if rendered:
                    flags.append(rendered)
                unresolved.extend(missing)
        return " ".join(flags), unresolved

    def _render_source(self, source: str, allow_positional: bool = True) -> tuple[str, list[str]]:
        if not source.strip():
            return "", []
        template = parse_template(source)
        parts: list[str] = []
        unresolved: list[str] = []
        for fragment in template.fragments:
            text, missing = self.render(fragment.nodes, allow_positional=allow_positional)
            parts.append(text)
            unresolved.extend(missing)
            if fragment.operator:
                parts.append(f" {fragment.operator} ")
        return "".join(parts), unresolved

    def _context_value(self, node: ContextRef) -> str:
        value = self.values.get(node.name)
        if value is None:
            raise GitGraphError(
                ErrorCode.MISSING_CONTEXT_PARAM,
                f"Missing context value for {node.name}",
                "Provide the value in the action context.",
                {"action_id": self.action.id, "key": node.name},
            )
        return value

    def _positional(self, node: Positional) -> str:
        if node.index <= len(self.context.args):
            return self.context.args[node.index - 1]
        if node.index <= len(self.action.params):
            default = self.action.params[node.index - 1].default
            try:
                rendered, _ = self._render_source(default, allow_positional=False)
            except GitGraphError as exc:
                if exc.code != ErrorCode.MISSING_CONTEXT_PARAM:
                    raise
                return default
            return rendered
        raise GitGraphError(
            ErrorCode.MISSING_CONTEXT_PARAM,
            f"Missing positional argument {node.marker}",
            "Pass the argument or define a parameter default.",
            {"action_id": self.action.id, "key": node.marker},
        )

    def _dynamic(self, node: ConfigLookup | ExecLookup) -> str | None:
        if isinstance(node, ConfigLookup):
            kind, key = "config", node.key
        else:
            kind, key = "exec", node.subcommand
        if node.marker in self._lookups:
            return self._lookups[node.marker]

        try:
            if self.source is None:
                raise GitGraphError(
                    ErrorCode.DYNAMIC_PLACEHOLDER_FAILED,
                    "No record source available for dynamic placeholders",
                    "Expand the action through the engine.",
                    {"kind": kind, "key": key},
                )
            if kind == "config":
                value = self.source.config_value(key)
                if value is None:
                    raise GitGraphError(
                        ErrorCode.DYNAMIC_PLACEHOLDER_FAILED,
                        f"Config key {key} is not set",
                        "Set the config value or pass the value explicitly.",
                        {"kind": kind, "key": key},
                    )
            else:
                value = self.source.exec_helper(shlex.split(key))
        except GitGraphError as exc:
            if exc.code == ErrorCode.DYNAMIC_PLACEHOLDER_FAILED:
                if self.strict:
                    raise
                error = exc
            else:
                error = GitGraphError(
                    ErrorCode.DYNAMIC_PLACEHOLDER_FAILED,
                    f"Dynamic placeholder {node.marker} failed",
                    "Check the repository configuration and the helper command.",
                    {"kind": kind, "key": key},
                )
                if self.strict:
                    raise error from exc
                error.__cause__ = exc
            self.unresolved.append(
                UnresolvedPlaceholder(marker=node.marker, kind=kind, key=key, error=error.to_payload())
            )
            return None

        value = value.strip()
        self._lookups[node.marker] = value
        return value


def load_user_actions(path: Path, file_manager: FileManager | None = None) -> list[ActionDef]:
    """Read user action definitions from a YAML or JSON file."""
    payload = (file_manager or FileManager()).read_yaml(path)
    if not payload:
        logger.info("No user actions found at %s", path)
        return []
    return parse_catalog(payload, origin=str(path))


def parse_catalog(payload: Any, origin: str = "<catalog>") -> list[ActionDef]:
    """Validate action definitions from a mapping with an ``actions`` list, or a bare list."""
    if isinstance(payload, Mapping):
        entries = payload.get("actions", [])
    else:
        entries = payload
    if not isinstance(entries, list):
        raise GitGraphError(
            ErrorCode.INVALID_INPUT,
            f"Action catalog {origin} must contain a list of actions",
            "Use a top-level 'actions' list.",
            {"origin": origin},
        )
    actions: list[ActionDef] = []
    for index, entry in enumerate(entries):
        try:
            actions.append(ActionDef.model_validate(entry))
        except ValidationError as exc:
            raise GitGraphError(
                ErrorCode.INVALID_INPUT,
                f"Invalid action at index {index} in {origin}",
                "Each action needs an id, a scope and a template.",
                {"origin": origin, "index": index, "errors": exc.errors(include_url=False)},
            ) from exc
    return actions


def _catalog_error(message: str, action_id: str) -> GitGraphError:
    return GitGraphError(
        ErrorCode.INVALID_INPUT,
        message,
        "Action ids and aliases must be unique.",
        {"action_id": action_id},
    )
