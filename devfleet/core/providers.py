"""Agent providers: how to launch each coding-agent CLI.

A provider only builds command lines. The process lifecycle stays with the
supervisor; the CLIs themselves are opaque subprocesses.

CLI prompt delivery varies:
- claude: prompt as the argument after -p
- codex: reads the prompt from stdin with --stdin
- gemini: reads the prompt from stdin
- opencode: prompt as the argument of ``run``
"""

from __future__ import annotations

import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from devfleet.core.config import ProviderConfig


class UnknownProviderError(LookupError):
    """No provider registered under the given name."""

    pass


@dataclass
class CommandSpec:
    """A command line plus how the prompt reaches it."""

    argv: list[str]
    env: dict[str, str] = field(default_factory=dict)
    prompt_via_stdin: bool = False


class AgentProvider(ABC):
    """Base class for agent CLIs."""

    name: str = ""
    binary: str = ""
    # Credential variables forwarded from the secrets source
    credential_env: tuple[str, ...] = ()

    def __init__(self, model: str | None = None):
        self.model = model

    @abstractmethod
    def command_spec(self, prompt: str) -> CommandSpec:
        """One-shot command that works on ``prompt`` and exits."""

    def interactive_spec(self) -> CommandSpec:
        """Long-lived session reading prompts from stdin."""
        return CommandSpec(argv=self._with_model([self.binary]), prompt_via_stdin=True)

    def is_installed(self) -> bool:
        return shutil.which(self.binary) is not None

    def _with_model(self, argv: list[str], after: int = 1) -> list[str]:
        if not self.model:
            return argv
        return argv[:after] + ["--model", self.model] + argv[after:]


class ClaudeProvider(AgentProvider):
    name = "claude"
    binary = "claude"
    credential_env = ("ANTHROPIC_API_KEY",)

    def command_spec(self, prompt: str) -> CommandSpec:
        # claude --model <id> -p <prompt>
        return CommandSpec(argv=self._with_model(["claude", "-p"]) + [prompt])


class CodexProvider(AgentProvider):
    name = "codex"
    binary = "codex"
    credential_env = ("OPENAI_API_KEY",)

    def command_spec(self, prompt: str) -> CommandSpec:
        # codex exec --model <id> --json --stdin
        return CommandSpec(
            argv=self._with_model(["codex", "exec", "--json", "--stdin"], after=2),
            prompt_via_stdin=True,
        )


class GeminiProvider(AgentProvider):
    name = "gemini"
    binary = "gemini"
    credential_env = ("GEMINI_API_KEY", "GOOGLE_API_KEY")

    def command_spec(self, prompt: str) -> CommandSpec:
        return CommandSpec(argv=self._with_model(["gemini", "-o", "json"]), prompt_via_stdin=True)


class OpenCodeProvider(AgentProvider):
    name = "opencode"
    binary = "opencode"
    credential_env = ("ANTHROPIC_API_KEY", "OPENAI_API_KEY")

    def command_spec(self, prompt: str) -> CommandSpec:
        return CommandSpec(argv=self._with_model(["opencode", "run"], after=2) + [prompt])


class ConfiguredProvider(AgentProvider):
    """Provider defined in ``.devfleet/config.yaml``.

    The prompt is appended as the last argument unless ``prompt_via_stdin``.
    """

    def __init__(self, config: ProviderConfig):
        super().__init__()
        self.config = config
        self.name = config.name
        self.binary = config.command[0]

    def command_spec(self, prompt: str) -> CommandSpec:
        argv = list(self.config.command)
        if not self.config.prompt_via_stdin:
            argv.append(prompt)
        return CommandSpec(
            argv=argv, env=dict(self.config.env), prompt_via_stdin=self.config.prompt_via_stdin
        )

    def interactive_spec(self) -> CommandSpec:
        argv = list(self.config.interactive_command or self.config.command)
        return CommandSpec(argv=argv, env=dict(self.config.env), prompt_via_stdin=True)


BUILTIN_PROVIDERS: dict[str, type[AgentProvider]] = {
    "claude": ClaudeProvider,
    "codex": CodexProvider,
    "gemini": GeminiProvider,
    "opencode": OpenCodeProvider,
}


class ProviderRegistry:
    """Lookup of providers by name."""

    def __init__(self, providers: dict[str, AgentProvider] | None = None):
        self._providers: dict[str, AgentProvider] = (
            dict(providers)
            if providers is not None
            else {name: cls() for name, cls in BUILTIN_PROVIDERS.items()}
        )

    @classmethod
    def from_config(cls, configured: dict[str, ProviderConfig]) -> ProviderRegistry:
        registry = cls()
        for name, config in configured.items():
            registry.register(ConfiguredProvider(config))
        return registry

    def register(self, provider: AgentProvider) -> None:
        self._providers[provider.name] = provider

    def get(self, name: str) -> AgentProvider:
        try:
            return self._providers[name]
        except KeyError:
            known = ", ".join(sorted(self._providers))
            raise UnknownProviderError(f"Unknown provider '{name}' (known: {known})") from None

    def names(self) -> list[str]:
        return sorted(self._providers)

    def __contains__(self, name: object) -> bool:
        return name in self._providers
