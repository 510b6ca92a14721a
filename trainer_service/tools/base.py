import inspect
import re
from typing import Any, Callable, Dict, List, Optional, get_type_hints

from trainer_service.core.interfaces import DirectiveExecutor
from trainer_service.core.types import DirectiveCall, DirectiveResult
from trainer_service.protocol.orchestration.router import result_from_output

# =============================
# Executor Authoring Guidelines
# =============================
#
# 1. Subclass BaseExecutor and list the directives it answers in `directives`
#    (directive name -> name of an async method on the class).
# 2. Each handler declares its parameters as keyword arguments. Arguments
#    without a default are required; a call missing one fails with a
#    validation message instead of reaching the handler.
# 3. Document handlers with a Google-style docstring. The first line becomes
#    the catalog description and the Args: section the parameter help, e.g.:
#
#     async def current_time(self, timezone: str = "UTC") -> dict:
#         """
#         Get the current time for a timezone.
#         Args:
#             timezone: IANA timezone (e.g., Europe/Dublin, UTC).
#         """
#
# 4. Handlers may return a str, a JSON-serializable value, a dict with an
#    "error" key (reported as a failure) or a DirectiveResult.

_JSON_TYPES = {str: "string", int: "integer", float: "number", bool: "boolean"}


class BaseExecutor(DirectiveExecutor):
    directives: Dict[str, str] = {}
    # short status lines shown while a directive runs
    descriptions: Dict[str, str] = {}

    def supported_names(self) -> List[str]:
        return list(self.directives)

    def describe(self, name: str) -> Optional[str]:
        return self.descriptions.get(name)

    def _handler(self, name: str) -> Optional[Callable[..., Any]]:
        method_name = self.directives.get(name)
        return getattr(self, method_name, None) if method_name else None

    @staticmethod
    def _extract_param_descriptions(docstring: str) -> dict:
        """
        Parse the docstring for an Args: section and return a mapping of param name to description.
        """
        if not docstring:
            return {}
        param_desc = {}
        args_section = re.search(r"Args?:\s*(.*?)(^\s*\S+:\s*$|\Z)", docstring, re.DOTALL | re.MULTILINE)
        if args_section:
            for line in args_section.group(1).splitlines():
                match = re.match(r"\s*(\w+)\s*:\s*(.*)", line)
                if match:
                    name, desc = match.groups()
                    param_desc[name] = desc.strip()
        return param_desc

    def catalog(self) -> List[Dict[str, Any]]:
        """Describe every directive for the system prompt."""
        entries = []
        for name in self.directives:
            handler = self._handler(name)
            if handler is None:
                continue
            doc = inspect.getdoc(handler) or ""
            summary = doc.strip().splitlines()[0] if doc.strip() else ""
            param_docs = self._extract_param_descriptions(doc)
            hints = get_type_hints(handler)
            params = []
            for pname, param in inspect.signature(handler).parameters.items():
                if param.kind in (param.VAR_KEYWORD, param.VAR_POSITIONAL):
                    continue
                hint = hints.get(pname, str)
                typ = _JSON_TYPES.get(hint, "string")
                params.append(
                    {
                        "name": pname,
                        "type": typ,
                        "required": param.default is inspect.Parameter.empty,
                        "description": param_docs.get(pname, ""),
                    }
                )
            entries.append({"name": name, "description": summary, "parameters": params})
        return entries

    async def execute(self, call: DirectiveCall) -> DirectiveResult:
        handler = self._handler(call.name)
        if handler is None:
            return DirectiveResult.failure(call.name, f"{type(self).__name__} does not handle '{call.name}'")

        sig = inspect.signature(handler)
        missing = [
            p.name
            for p in sig.parameters.values()
            if p.default is inspect.Parameter.empty
            and p.kind in (p.POSITIONAL_OR_KEYWORD, p.KEYWORD_ONLY)
            and p.name not in call.parameters
        ]
        if missing:
            return DirectiveResult.failure(call.name, f"Missing required parameter(s): {', '.join(missing)}")

        accepts_kwargs = any(p.kind == p.VAR_KEYWORD for p in sig.parameters.values())
        kwargs = {k: v for k, v in call.parameters.items() if accepts_kwargs or k in sig.parameters}
        return result_from_output(call.name, await handler(**kwargs))
