#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from asyncio import CancelledError
from pathlib import Path
from typing import NamedTuple

from dotenv import load_dotenv
from platformdirs import user_config_dir
from rich.console import Group
from rich.live import Live
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from dictanote import (
    Advisory,
    ConsoleWithLogging,
    FeatureGate,
    Folder,
    NoteCard,
    RecognitionConfig,
    TransientRecognitionError,
    debug,
    errprint,
)
from dictanote_streams import DeepgramRecognitionStream, StreamingSpeechPlatform


class Config:
    class Capture(NamedTuple):
        gain: float
        microphone_name: str | None
        microphone_id: str | None

    class Recognition(NamedTuple):
        provider: StreamingSpeechPlatform.Provider
        api_key: str | None
        model: object
        locale: str | None
        silence_duration_ms: int
        restart_delay_ms: int
        max_restarts: int | None

    class App(NamedTuple):
        console: ConsoleWithLogging
        capture: Config.Capture
        recognition: Config.Recognition
        folders: tuple[Folder, ...]


class CommandLineParser:
    ENV_PREFIX = "DICTANOTE_"
    APP_NAME = "dictanote"

    @classmethod
    def get_env(cls, name: str, default: str | None = None, prefix_optional: bool = False):
        result = os.getenv(f"{cls.ENV_PREFIX}{name}", default)
        if prefix_optional and result is None:
            result = os.getenv(name, default)
        return result

    @classmethod
    def _create_arguments(cls, parser: argparse.ArgumentParser, default: dict[str, str | int | float | None]):
        prefix = cls.ENV_PREFIX
        parser.add_argument(
            "-c",
            "--config",
            default=default.get("CONFIG_PATH"),
            help=f"Path to config file to load instead of the default user config ({default.get('CONFIG_PATH')})",
        )
        parser.add_argument(
            "-m",
            "--model",
            default=default.get("MODEL"),
            choices=StreamingSpeechPlatform.all_models(),
            help=f"Deepgram or OpenAI model to use for dictation, selects the provider (env: {prefix}MODEL)",
        )
        parser.add_argument(
            "-l",
            "--language",
            default=default.get("LANGUAGE"),
            help=f"Dictation locale, like en-US or pt-BR (env: {prefix}LANGUAGE)",
        )
        parser.add_argument(
            "-sd",
            "--silence-duration",
            type=int,
            default=default.get("SILENCE_DURATION"),
            help=f"Silence duration in milliseconds before the provider closes a speech segment (env: {prefix}SILENCE_DURATION)",
        )
        parser.add_argument(
            "-g",
            "--gain",
            type=float,
            default=default.get("GAIN"),
            help=f"Microphone amplification factor, 1.0=normal, 2.0=double (env: {prefix}GAIN)",
        )
        parser.add_argument(
            "-mic",
            "--microphone",
            default=default.get("MICROPHONE"),
            help=f"Text filter or ID for selecting the microphone input device (env: {prefix}MICROPHONE)",
        )
        parser.add_argument(
            "-kdg",
            "--deepgram-api-key",
            default=default.get("DEEPGRAM_API_KEY"),
            help=f"Deepgram API key (env: {prefix}DEEPGRAM_API_KEY or DEEPGRAM_API_KEY)",
        )
        parser.add_argument(
            "-koa",
            "--openai-api-key",
            default=default.get("OPENAI_API_KEY"),
            help=f"OpenAI API key (env: {prefix}OPENAI_API_KEY or OPENAI_API_KEY)",
        )
        parser.add_argument(
            "-rd",
            "--restart-delay",
            type=int,
            default=default.get("RESTART_DELAY"),
            help=f"Delay in milliseconds before restarting a stream the provider ended on its own (env: {prefix}RESTART_DELAY)",
        )
        parser.add_argument(
            "-mr",
            "--max-restarts",
            type=int,
            default=default.get("MAX_RESTARTS"),
            help=f"Give up after this many restarts in a row without any transcript, 0 for no limit (env: {prefix}MAX_RESTARTS)",
        )
        parser.add_argument(
            "-f",
            "--folders",
            default=default.get("FOLDERS"),
            help=f'Folders the note can be saved in, as comma-separated "id=name" pairs (env: {prefix}FOLDERS)',
        )
        parser.add_argument(
            "--log",
            default=default.get("LOG"),
            help=f"Path to log file. Default: {default.get('LOG_PATH')} (env: {prefix}LOG)",
        )

    @classmethod
    def parse(cls, argv: list[str] | None = None) -> Config.App | None:
        config_path_mandatory = False
        if config_path_str := cls._extract_config_path_from_argv(argv):
            config_path_mandatory = True
        else:
            config_path_str = (os.getenv(f"{cls.ENV_PREFIX}CONFIG") or "").strip()

        config_dir = Path(user_config_dir(cls.APP_NAME, ensure_exists=False))

        config_path = None
        if config_path_str:
            config_path = Path(config_path_str)
            # `foo` can also mean `~/.config/dictanote/foo.env`
            if (
                not config_path.is_absolute()
                and not (Path.cwd() / config_path).exists()
                and not (config_path := (config_dir / f"{config_path}.env")).exists()
            ):
                config_path = None

        if config_path is None:
            config_path = config_dir / "config.env"

        config_path = config_path.expanduser()
        if not config_path.is_absolute():
            config_path = (Path.cwd() / config_path).resolve(strict=False)
        config_path = config_path.resolve(strict=False)

        if config_path_mandatory and not config_path.is_file():
            errprint(f"ERROR: Config file {config_path} does not exist or is not a file")
            return None

        success, loaded_config_files = cls._load_env_files(config_path)
        if not success:
            return None

        epilog = f"""Configuration files:
  1. .env file in the current directory and in the script's directory
  2. {config_dir / "config.env"} (or the one given with --config)
  3. Parent config files chained with `{cls.ENV_PREFIX}PARENT_CONFIG`

  Command-line arguments override environment variables, which override config files.
  Each option can be set via environment variable using the {cls.ENV_PREFIX} prefix.
  *_API_KEY environment variables can also be set without the prefix.

Commands, once started:
  :r  start/stop dictation      :t  type instead of dictating
  :s  save the note             :f ID  pick a folder (:f alone for none)
  :c  clear the note            :q  close the note card
  :o  open a new note card      :x  exit
  Any other line is appended to the note.
  """

        parser = argparse.ArgumentParser(
            prog=cls.APP_NAME,
            description="Write short notes by typing or by continuous dictation",
            epilog=epilog,
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )

        log_path_default = Path(user_config_dir(cls.APP_NAME, ensure_exists=False)) / f"{cls.APP_NAME}.log"
        default: dict[str, str | int | float | None] = {
            "MODEL": cls.get_env("MODEL", DeepgramRecognitionStream.Model.NOVA_3.value),
            "LANGUAGE": cls.get_env("LANGUAGE", "en-US"),
            "SILENCE_DURATION": int(cls.get_env("SILENCE_DURATION", "500")),
            "GAIN": float(cls.get_env("GAIN", "1.0")),
            "MICROPHONE": cls.get_env("MICROPHONE"),
            "DEEPGRAM_API_KEY": cls.get_env("DEEPGRAM_API_KEY", prefix_optional=True),
            "OPENAI_API_KEY": cls.get_env("OPENAI_API_KEY", prefix_optional=True),
            "RESTART_DELAY": int(cls.get_env("RESTART_DELAY", "200")),
            "MAX_RESTARTS": int(cls.get_env("MAX_RESTARTS", "0")),
            "FOLDERS": cls.get_env("FOLDERS", ""),
            "LOG": cls.get_env("LOG"),
            "LOG_PATH": log_path_default.as_posix(),
            "CONFIG_PATH": config_path.as_posix(),
        }

        cls._create_arguments(parser, default)
        args = parser.parse_args(argv)

        provider, model = StreamingSpeechPlatform.model_from_value(args.model)
        api_key = args.openai_api_key if provider is StreamingSpeechPlatform.Provider.OPENAI else args.deepgram_api_key

        try:
            folders = cls._parse_folders(args.folders)
        except ValueError as exc:
            errprint(f"ERROR: {exc}")
            return None

        if args.restart_delay < 0:
            errprint("ERROR: --restart-delay cannot be negative")
            return None
        if args.max_restarts < 0:
            errprint("ERROR: --max-restarts cannot be negative")
            return None

        warnings: list[str] = []
        if not api_key:
            key_name = "OPENAI_API_KEY" if provider is StreamingSpeechPlatform.Provider.OPENAI else "DEEPGRAM_API_KEY"
            warnings.append(
                f'{provider.value} API key is not defined (for "{model.value}" model), dictation is disabled. '
                f"Set {key_name} or {cls.ENV_PREFIX}{key_name}."
            )

        microphone_name = microphone_id = None
        try:
            microphone = cls._select_microphone(args.microphone.strip() if args.microphone else None)
        except Exception as exc:
            warnings.append(f"Unable to find microphone, dictation is disabled: {exc}")
        else:
            microphone_name, microphone_id = microphone.name, microphone.id

        if args.log:
            log_path = Path(args.log).expanduser()
        else:
            log_path = log_path_default
        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_file = open(log_path, "a", encoding="utf-8")

        console = ConsoleWithLogging(log_file)

        config_table = Table(show_header=False, box=None, padding=(0, 1))
        config_table.add_column(style="bold cyan", width=20)
        config_table.add_column()

        config_table.add_row("Dictation", f"[yellow]{model.value}[/yellow] from [green]{provider.value}[/green]")
        config_table.add_row("Locale", f"[yellow]{args.language}[/yellow]" if args.language else "[dim]Auto-detect[/dim]")
        if args.gain != 1.0:
            config_table.add_row("Audio gain", f"[yellow]{args.gain}x[/yellow]")
        mic_display_name = microphone_name or microphone_id or "[red]None[/red]"
        config_table.add_row("Microphone", f"[yellow]{mic_display_name}[/yellow]")
        restarts = f"after [yellow]{args.restart_delay}ms[/yellow]"
        if args.max_restarts:
            restarts += f", at most [yellow]{args.max_restarts}[/yellow] in a row without transcript"
        config_table.add_row("Stream restarts", restarts)
        if folders:
            config_table.add_row("Folders", ", ".join(f"[yellow]{folder.name}[/yellow] [dim]({folder.id})[/dim]" for folder in folders))
        else:
            config_table.add_row("Folders", "[dim]None, folder selection disabled[/dim]")

        def format_path(path: Path) -> str:
            try:
                return f"~/{path.relative_to(Path.home())}"
            except ValueError:
                return str(path)

        config_table.add_row("", "")
        config_table.add_row("[bold]Files", "")
        if loaded_config_files:
            if len(loaded_config_files) == 1:
                config_table.add_row("  Config", f"[yellow]{format_path(loaded_config_files[0])}[/yellow]")
            else:
                config_table.add_row("  Config", "[dim](loaded in priority order, last overrides first)[/dim]")
                for i, config_file in enumerate(loaded_config_files, 1):
                    config_table.add_row("", f"[yellow]  {i}. {format_path(config_file)}[/yellow]")
        else:
            config_table.add_row("  Config", "[dim]None loaded[/dim]")
        config_table.add_row("  Log", f"[yellow]{format_path(log_path)}[/yellow]")

        console.print_and_log(Panel(config_table, title="[bold]Dictanote Configuration[/bold]", border_style="blue"), log_max_width=150)
        for warning in warnings:
            console.print_and_log(f"[bold yellow]WARNING:[/bold yellow] {warning}")
        console.print()

        return Config.App(
            console=console,
            capture=Config.Capture(
                gain=args.gain,
                microphone_name=microphone_name,
                microphone_id=microphone_id,
            ),
            recognition=Config.Recognition(
                provider=provider,
                api_key=api_key,
                model=model,
                locale=args.language or None,
                silence_duration_ms=int(args.silence_duration),
                restart_delay_ms=args.restart_delay,
                max_restarts=args.max_restarts or None,
            ),
            folders=folders,
        )

    @classmethod
    def _load_env_files(cls, config_path: Path) -> tuple[bool, list[Path]]:
        """Load environment files and return success status and list of loaded files.

        Returns:
            Tuple of (success, loaded_files) where loaded_files contains paths in load order
        """
        loaded_files = []

        for directory in {Path.cwd(), Path(__file__).parent}:
            if (env_path := (directory / ".env")).is_file():
                load_dotenv(env_path, override=False)
                loaded_files.append(env_path.resolve())

        config_files = []
        if config_path.is_file():
            success, config_files = cls._load_config_with_parents(config_path)
            if not success:
                return False, []

        return True, loaded_files + config_files

    @classmethod
    def _load_config_with_parents(
        cls,
        config_path: Path,
        visited: set[Path] | None = None,
        source: Path | None = None,
    ) -> tuple[bool, list[Path]]:
        """Load config file and its parents recursively.

        Returns:
            Tuple of (success, loaded_files) where loaded_files contains paths in load order
            (parents first, then children)
        """
        parent_key = f"{cls.ENV_PREFIX}PARENT_CONFIG"
        os.environ.pop(parent_key, None)
        visited = set() if visited is None else visited
        defined_in = f" (defined in {source})" if source else ""

        if config_path in visited:
            errprint(f"ERROR: Circular {parent_key} reference detected: {config_path}{defined_in}")
            return False, []
        visited.add(config_path)

        if not config_path.is_file():
            errprint(f"ERROR: Config file not found or is not a file: {config_path}{defined_in}")
            return False, []

        # loaded first so that its parent reference can be read
        load_dotenv(dotenv_path=config_path, override=False)

        loaded_files = []
        if parent_value := (os.environ.pop(parent_key, None) or "").strip():
            parent_path = Path(parent_value).expanduser()
            if not parent_path.is_absolute():
                parent_path = config_path.parent / parent_path
            success, parent_files = cls._load_config_with_parents(
                parent_path.resolve(strict=False),
                visited=visited,
                source=config_path,
            )
            if not success:
                return False, []
            loaded_files.extend(parent_files)

        loaded_files.append(config_path.resolve())
        return True, loaded_files

    @classmethod
    def _extract_config_path_from_argv(cls, argv: list[str] | None = None) -> str | None:
        parser = argparse.ArgumentParser(add_help=False)
        parser.add_argument("-c", "--config")
        args = parser.parse_known_args(argv)[0]
        return None if args.config is None else args.config.strip()

    @staticmethod
    def _parse_folders(folders_str: str | None) -> tuple[Folder, ...]:
        folders: list[Folder] = []
        seen: set[str] = set()
        for item in (folders_str or "").split(","):
            if not (item := item.strip()):
                continue
            folder_id, sep, name = item.partition("=")
            folder_id, name = folder_id.strip(), name.strip()
            if not sep or not folder_id or not name:
                raise ValueError(f'Invalid folder "{item}", expected "id=name"')
            if folder_id in seen:
                raise ValueError(f'Duplicate folder id "{folder_id}"')
            seen.add(folder_id)
            folders.append(Folder(id=folder_id, name=name))
        return tuple(folders)

    @staticmethod
    def _select_microphone(filter_text: str | None):
        from dictanote_audio import find_microphone, use_microphone

        microphone = find_microphone(filter_text)
        use_microphone(microphone)
        return microphone


class TerminalSurface:
    """The note card, drawn with rich and driven by commands read line by line."""

    class Command(NamedTuple):
        name: str
        argument: str

    COMMANDS = {":o", ":q", ":x", ":r", ":t", ":s", ":f", ":c", ":h"}

    def __init__(self, config: Config.App):
        self.config = config
        self.console = config.console
        self.card: NoteCard | None = None
        self.live: Live | None = None
        self.advisory: Advisory | None = None
        self.error: str | None = None
        self.exit_requested = False

    # NoteCard callbacks

    def note_created(self, content: str, folder_id: str | None) -> None:
        folder = next((f.name for f in self.config.folders if f.id == folder_id), None)
        title = f"Note saved in {folder}" if folder else "Note saved (no folder)"
        self.console.print_and_log(Panel(Text(content), title=title, border_style="green"))

    def open_changed(self, is_open: bool) -> None:
        debug("[SURFACE] open" if is_open else "[SURFACE] closed")
        self.advisory = None
        self.error = None

    def show_advisory(self, advisory: Advisory) -> None:
        self.advisory = advisory
        self.console.log(f"{advisory.kind.value}: {advisory.message}")
        self.refresh()

    def show_error(self, error: TransientRecognitionError) -> None:
        self.error = str(error)
        self.console.log(self.error)
        self.refresh()

    def refresh(self) -> None:
        if self.live is None:
            return
        self.live.update(self.render(), refresh=True)

    # commands

    @classmethod
    def parse_line(cls, line: str) -> TerminalSurface.Command | None:
        stripped = line.strip()
        name, _, argument = stripped.partition(" ")
        if name in cls.COMMANDS:
            return cls.Command(name=name, argument=argument.strip())
        return None

    def handle_line(self, line: str) -> bool:
        """Apply one input line to the card, return False once the program should exit."""
        card = self.card
        line = line.rstrip("\n")
        command = self.parse_line(line)

        if command is None:
            if card.is_open and line:
                card.start_editor()
                card.type_text(f"{card.draft.content}\n{line}" if card.draft.content else line)
            return True

        self.error = None
        match command.name:
            case ":x":
                self.exit_requested = True
                return False
            case ":o":
                card.open()
            case ":h":
                self.console.print(self.help_text())
            case _ if not card.is_open:
                self.show_notice("The note card is closed, use :o to open it")
            case ":q":
                card.close()
            case ":r":
                if card.is_recording:
                    card.stop_dictation()
                else:
                    card.start_dictation()
            case ":t":
                card.start_editor()
            case ":s":
                if card.save() is None:
                    self.show_notice("Nothing to save yet")
            case ":c":
                card.type_text("")
            case ":f":
                try:
                    card.select_folder(command.argument or None)
                except ValueError as exc:
                    self.error = str(exc)
        self.refresh()
        return True

    def show_notice(self, message: str) -> None:
        self.error = message
        self.refresh()

    @staticmethod
    def help_text() -> str:
        return (
            "[bold]:r[/bold] dictate/stop  [bold]:t[/bold] type  [bold]:s[/bold] save  [bold]:f ID[/bold] folder  "
            "[bold]:c[/bold] clear  [bold]:q[/bold] close  [bold]:o[/bold] open  [bold]:x[/bold] exit"
        )

    # rendering

    def render(self):
        card = self.card
        if card is None or not card.is_open:
            return Text("No note card open. Type :o to add a note, :x to exit.", style="dim")

        text = Text(overflow="fold", no_wrap=False)
        if card.draft.onboarding_visible:
            text.append("Start ")
            text.append("recording a note (:r)", style="bold green")
            text.append(" or, if you prefer, ")
            text.append("use text only (:t)", style="bold green")
        elif content := card.draft.content:
            text.append(content)
        else:
            text.append("...", style="dim")

        if card.folder_selection_enabled and not card.draft.onboarding_visible:
            text.append("\n\nSave in folder (optional, :f ID): ", style="dim")
            selected = card.draft.selected_folder_id
            text.append("[none]" if selected is None else "none", style="bold" if selected is None else "dim")
            for folder in self.config.folders:
                text.append("  ")
                label = f"{folder.name} ({folder.id})"
                text.append(f"[{label}]" if folder.id == selected else label, style="bold" if folder.id == selected else "dim")

        if self.advisory is not None:
            style = {
                Advisory.Kind.UNSUPPORTED: "bold red",
                Advisory.Kind.RESTRICTED_ENVIRONMENT: "bold yellow",
                Advisory.Kind.NOTE_CREATED: "bold green",
            }[self.advisory.kind]
            text.append(f"\n\n{self.advisory.message}", style=style)
        if self.error:
            text.append(f"\n\n{self.error}", style="red")

        if card.is_recording:
            bottom = Rule("● Recording! (:r to stop)", style="red")
        else:
            bottom = Rule("Save note (:s)", style="green")
        return Group(Rule("Add note", style="cyan"), text, bottom)

    async def run(self, lines: asyncio.Queue[str | None]) -> None:
        with Live(
            self.render(),
            console=self.console.console,
            refresh_per_second=8,
            auto_refresh=False,
            transient=False,
        ) as live:
            self.live = live
            try:
                while True:
                    line = await lines.get()
                    if line is None or not self.handle_line(line):
                        break
            except CancelledError:
                pass
            finally:
                self.live = None


def read_stdin_lines(loop: asyncio.AbstractEventLoop) -> asyncio.Queue[str | None]:
    lines: asyncio.Queue[str | None] = asyncio.Queue()

    def _on_readable():
        line = sys.stdin.readline()
        if not line:
            loop.remove_reader(sys.stdin)
            lines.put_nowait(None)
            return
        lines.put_nowait(line)

    loop.add_reader(sys.stdin, _on_readable)
    return lines


async def main_async(argv: list[str] | None = None) -> int:
    app_config = CommandLineParser.parse(argv)
    if app_config is None:
        return 1

    from dictanote_audio import MicrophoneCapture, microphone_available

    recognition = app_config.recognition
    platform = StreamingSpeechPlatform(
        provider=recognition.provider,
        api_key=recognition.api_key,
        model=recognition.model,
        audio_source_factory=lambda sample_rate: MicrophoneCapture(sample_rate, gain=app_config.capture.gain),
        microphone_available=lambda: app_config.capture.microphone_name is not None and microphone_available(),
        silence_duration_ms=recognition.silence_duration_ms,
    )
    surface = TerminalSurface(app_config)
    loop = asyncio.get_running_loop()
    lines = read_stdin_lines(loop)
    try:
        with NoteCard(
            FeatureGate(platform),
            on_note_created=surface.note_created,
            handle_open=surface.open_changed,
            folders=app_config.folders,
            recognition=RecognitionConfig(locale=recognition.locale),
            on_advisory=surface.show_advisory,
            on_error=surface.show_error,
            on_change=surface.refresh,
            restart_delay=recognition.restart_delay_ms / 1000,
            max_consecutive_restarts=recognition.max_restarts,
        ) as card:
            surface.card = card
            card.open()
            app_config.console.print(TerminalSurface.help_text())
            await surface.run(lines)
    except (KeyboardInterrupt, CancelledError):
        pass
    finally:
        loop.remove_reader(sys.stdin)
        # let released streams close their connections
        await asyncio.sleep(0)
        print("\nExit.")
    return 0


def main():
    sys.exit(asyncio.run(main_async()))


if __name__ == "__main__":
    main()
