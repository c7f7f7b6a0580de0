"""
Flash orchestrator: the boot-loader console script as a state table.

Each stage pairs a console transaction (send/expect steps built from the
current attempt) with a timeout, the next stage on success and on failure,
an enabling predicate and a hook that folds matches into the attempt.

Stages, in order:
1. reboot               - Linux shell -> reboot (non-fatal)
2. detect_dialect       - autoboot banner -> dialect and stop keyword
3. stop_autoboot        - stop autoboot, capture the shell name
4. bootloader_network   - serverip/ipaddr set and read back   [bootloader]
5. bootloader_flash     - TFTP, verify size, erase, copy, reset [bootloader]
6. bootloader_restart   - stop new autoboot, persist board name [bootloader]
7. network              - serverip/ipaddr set and read back
8. firmware             - TFTP, verify size, erase, copy, boot kernel

The orchestrator never retries; a failing stage ends the attempt with a
FlashOutcome carrying the error and the transaction's output.
"""

import logging
import re
import time
from dataclasses import dataclass, field, fields
from typing import Callable, Dict, List, Optional, Sequence

from .console import (
    ConsoleError,
    ConsoleSession,
    ConsoleTimeout,
    ConsoleTransportError,
    Expect,
    ExpectMatch,
    Send,
    Step,
    TransactionResult,
    VerificationMismatch,
)
from ..core.config import UpdaterConfig
from ..core.parsing import erase_length, format_hex
from ..models import Dialect, FirmwareImage, SessionContext, dialect_for_index, dialect_patterns

logger = logging.getLogger(__name__)

ROOT_PROMPT = r"root@"
SHELL_PROMPT = r"(?P<shell>[0-9A-Za-z]+)>"
BYTES_TRANSFERRED = r"Bytes transferred = (?P<bytes>\d+)\s"
ERASED_SECTORS = r"Erased \d+ sectors"
COPY_DONE = r"done"
AUTOBOOT_COUNTDOWN = r"autoboot in"
KERNEL_START = r"Starting kernel"


def prompt_pattern(shell_name: str) -> str:
    """Pattern for the ``<shell>>`` prompt; the name is matched literally."""
    return re.escape(shell_name) + ">"


def env_pattern(name: str) -> str:
    """Pattern capturing the value of one ``printenv`` line."""
    return rf"(?m)^{re.escape(name)}=(?P<value>[^\r\n]*)\r?\n"


def resolve_stop_command(dialect: Dialect, match: ExpectMatch) -> str:
    """
    Stop command for a matched autoboot banner.

    The legacy "press any key" banner stops on an empty line whatever was
    captured.
    """
    if dialect is Dialect.LEGACY:
        return ""
    return match.group("stop")


def verify_env(name: str, expected: str) -> Callable[[ExpectMatch], None]:
    def check(match: ExpectMatch) -> None:
        got = match.group("value").strip()
        if got != expected:
            raise VerificationMismatch(
                f"{name} reads back as '{got}', expected '{expected}'"
            )
    return check


def verify_size(image: FirmwareImage) -> Callable[[ExpectMatch], None]:
    def check(match: ExpectMatch) -> None:
        got = int(match.group("bytes", "-1"))
        if got != image.size:
            raise VerificationMismatch(
                f"{image.name}: device received {got} bytes, expected {image.size}"
            )
    return check


@dataclass
class Attempt:
    """Per-attempt state, discarded when the attempt ends."""
    context: SessionContext
    config: UpdaterConfig
    flash_bootloader: bool = False
    dialect: Optional[Dialect] = None
    stop_command: str = ""
    shell_name: str = ""
    completed: List[str] = field(default_factory=list)

    @property
    def prompt(self) -> str:
        return prompt_pattern(self.shell_name)

    @property
    def fixed_prompt(self) -> str:
        return prompt_pattern(self.config.expected_shell)


@dataclass
class FlashOutcome:
    """
    Result of one orchestrator run.

    Attributes:
        ok: Whether the kernel-boot marker was seen
        output: Console text of the last transaction
        error: Triggering error, None on success
        stage: Stage that failed, or the last stage run
        dialect: Detected boot-loader dialect
        stop_command: Keyword used to stop autoboot
        shell_name: Shell name detected before any boot-loader flash
        flash_bootloader: Whether the boot-loader had to be (re)flashed
        completed: Stages that finished successfully
    """
    ok: bool
    output: str = ""
    error: Optional[ConsoleError] = None
    stage: str = ""
    dialect: Optional[Dialect] = None
    stop_command: str = ""
    shell_name: str = ""
    flash_bootloader: bool = False
    completed: List[str] = field(default_factory=list)

    @property
    def error_kind(self) -> str:
        if self.error is None:
            return ""
        if isinstance(self.error, ConsoleTransportError):
            return "transport"
        if isinstance(self.error, VerificationMismatch):
            return "mismatch"
        if isinstance(self.error, ConsoleTimeout):
            return "timeout"
        return "console"


def _always(attempt: Attempt) -> bool:
    return True


@dataclass(frozen=True)
class Stage:
    """
    One row of the state table.

    Attributes:
        name: Stage name, also the StageTimeouts field holding its timeout
        script: Builds the transaction steps for the attempt
        on_success: Next stage name (None ends the run successfully)
        on_failure: Stage to continue with after a timeout (None aborts)
        enabled: Predicate; a disabled stage is skipped to on_success
        on_skip: Called when the stage is skipped
        apply: Folds the transaction result into the attempt
        settle: SettleDelays field to sleep after success
        flush_before: Drop stale console output before starting
        announce: Logged when the stage starts
        failure_hint: Logged when a non-fatal failure is recovered
    """
    name: str
    script: Callable[[Attempt], Sequence[Step]]
    on_success: Optional[str]
    on_failure: Optional[str] = None
    enabled: Callable[[Attempt], bool] = _always
    on_skip: Optional[Callable[[Attempt], None]] = None
    apply: Optional[Callable[[Attempt, TransactionResult], None]] = None
    settle: Optional[str] = None
    flush_before: bool = False
    announce: str = ""
    failure_hint: str = ""


# --- Scripts -------------------------------------------------------------

def reboot_script(attempt: Attempt) -> List[Step]:
    return [Send(""), Expect(ROOT_PROMPT), Send("reboot -f")]


def detect_dialect_script(attempt: Attempt) -> List[Step]:
    return [Expect(*dialect_patterns())]


def stop_autoboot_script(attempt: Attempt) -> List[Step]:
    return [Send(attempt.stop_command), Send("printenv"), Expect(SHELL_PROMPT)]


def network_steps(prompt: str, context: SessionContext) -> List[Step]:
    """Set serverip/ipaddr and read each one back before moving on."""
    server, device = context.server_address, context.device_address
    return [
        Send(f"setenv serverip {server}"),
        Expect(prompt),
        Send("printenv"),
        Expect(env_pattern("serverip"), verify=verify_env("serverip", server)),
        Expect(prompt),
        Send(f"setenv ipaddr {device}"),
        Expect(prompt),
        Send("printenv"),
        Expect(env_pattern("ipaddr"), verify=verify_env("ipaddr", device)),
        Expect(prompt),
    ]


def bootloader_network_script(attempt: Attempt) -> List[Step]:
    return network_steps(attempt.prompt, attempt.context)


def bootloader_flash_script(attempt: Attempt) -> List[Step]:
    layout = attempt.config.layout
    image = attempt.context.bootloader_image
    prompt = attempt.prompt
    return [
        Send("printenv"),
        Expect(prompt),
        Send(f"tftp {format_hex(layout.load_address)} {image.name}"),
        Expect(BYTES_TRANSFERRED, verify=verify_size(image)),
        Expect(prompt),
        Send(f"erase {format_hex(layout.bootloader_address)} +{format_hex(layout.bootloader_erase)}"),
        Expect(prompt),
        Send(f"cp.b $fileaddr {format_hex(layout.bootloader_address)} $filesize"),
        Expect(prompt),
        Send(f"erase {format_hex(layout.env_address)} +{format_hex(layout.env_erase)}"),
        Expect(prompt),
        Send("reset"),
    ]


def bootloader_restart_script(attempt: Attempt) -> List[Step]:
    # The new boot-loader always stops on the fixed keyword
    prompt = attempt.fixed_prompt
    board = attempt.context.target_board
    return [
        Expect(AUTOBOOT_COUNTDOWN),
        Send(attempt.config.stop_keyword),
        Expect(prompt),
        Send("printenv"),
        Expect(prompt),
        Send(f"setenv board {board}"),
        Expect(prompt),
        Send("printenv"),
        Expect(env_pattern("board"), verify=verify_env("board", board)),
        Expect(prompt),
        Send("saveenv"),
        Expect(prompt),
    ]


def network_script(attempt: Attempt) -> List[Step]:
    return network_steps(attempt.fixed_prompt, attempt.context)


def firmware_script(attempt: Attempt) -> List[Step]:
    layout = attempt.config.layout
    image = attempt.context.main_image
    prompt = attempt.fixed_prompt
    erase = erase_length(image.size, layout.erase_block_size)
    return [
        Send("printenv"),
        Expect(r"board="),
        Expect(prompt),
        Send(f"tftp {format_hex(layout.load_address)} {image.name}"),
        Expect(BYTES_TRANSFERRED, verify=verify_size(image)),
        Expect(prompt),
        Send(f"erase {format_hex(layout.firmware_address)} +{format_hex(erase)}"),
        Expect(ERASED_SECTORS),
        Send("printenv"),
        Expect(prompt),
        Send(f"cp.b $fileaddr {format_hex(layout.firmware_address)} $filesize"),
        Expect(COPY_DONE),
        Send("printenv"),
        Expect(prompt),
        Send("reset"),
        Expect(KERNEL_START),
    ]


# --- Hooks ---------------------------------------------------------------

def apply_reboot(attempt: Attempt, result: TransactionResult) -> None:
    logger.info("Rebooting the board")


def apply_dialect(attempt: Attempt, result: TransactionResult) -> None:
    match = result.last
    attempt.dialect = dialect_for_index(match.index)
    attempt.stop_command = resolve_stop_command(attempt.dialect, match)
    if attempt.dialect is Dialect.LEGACY:
        logger.info("Old YUN detected")
    logger.info(f"Using stop command: '{attempt.stop_command}'")


def skip_dialect(attempt: Attempt) -> None:
    attempt.dialect = Dialect.LEGACY
    attempt.stop_command = ""
    logger.info("Legacy mode: stopping autoboot with any key")


def apply_shell(attempt: Attempt, result: TransactionResult) -> None:
    attempt.shell_name = result.last.group("shell")
    logger.info(f"Got shell: {attempt.shell_name}")
    if attempt.shell_name != attempt.config.expected_shell and not attempt.flash_bootloader:
        logger.warning(
            f"Shell '{attempt.shell_name}' is not '{attempt.config.expected_shell}': "
            "boot-loader is outdated and will be replaced"
        )
        attempt.flash_bootloader = True


def apply_bootloader_restart(attempt: Attempt, result: TransactionResult) -> None:
    logger.info(f"Boot-loader replaced, board set to {attempt.context.target_board}")


def _flashing_bootloader(attempt: Attempt) -> bool:
    return attempt.flash_bootloader


def _detecting_dialect(attempt: Attempt) -> bool:
    return not attempt.context.legacy


STAGES: Sequence[Stage] = (
    Stage(
        name="reboot",
        script=reboot_script,
        on_success="detect_dialect",
        on_failure="detect_dialect",
        apply=apply_reboot,
        failure_hint="Reboot the board using YUN RST button",
    ),
    Stage(
        name="detect_dialect",
        script=detect_dialect_script,
        on_success="stop_autoboot",
        enabled=_detecting_dialect,
        on_skip=skip_dialect,
        apply=apply_dialect,
    ),
    Stage(
        name="stop_autoboot",
        script=stop_autoboot_script,
        on_success="bootloader_network",
        apply=apply_shell,
        settle="after_stop",
    ),
    Stage(
        name="bootloader_network",
        script=bootloader_network_script,
        on_success="bootloader_flash",
        enabled=_flashing_bootloader,
        settle="after_network",
        flush_before=True,
        announce="Flashing Bootloader",
    ),
    Stage(
        name="bootloader_flash",
        script=bootloader_flash_script,
        on_success="bootloader_restart",
        enabled=_flashing_bootloader,
        settle="after_bootloader_reset",
    ),
    Stage(
        name="bootloader_restart",
        script=bootloader_restart_script,
        on_success="network",
        enabled=_flashing_bootloader,
        apply=apply_bootloader_restart,
    ),
    Stage(
        name="network",
        script=network_script,
        on_success="firmware",
        settle="after_network",
        flush_before=True,
        announce="Setting up IP addresses",
    ),
    Stage(
        name="firmware",
        script=firmware_script,
        on_success=None,
        announce="Flashing sysupgrade image",
    ),
)


class FlashOrchestrator:
    """
    Walk the stage table over an open console session.

    Example:
        with ConsoleSession(port) as console:
            outcome = FlashOrchestrator(console, config).run(context)
    """

    def __init__(
        self,
        session: ConsoleSession,
        config: UpdaterConfig,
        stages: Sequence[Stage] = STAGES,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if not stages:
            raise ValueError("Stage table is empty")
        known = {f.name for f in fields(config.timeouts)}
        unknown = [stage.name for stage in stages if stage.name not in known]
        if unknown:
            raise ValueError(
                f"No timeout configured for stage(s): {', '.join(unknown)} "
                f"(known: {', '.join(sorted(known))})"
            )
        self.session = session
        self.config = config
        self.stages: Dict[str, Stage] = {stage.name: stage for stage in stages}
        self.first = stages[0].name
        self.sleep = sleep

    def _outcome(self, attempt: Attempt, ok: bool, stage: str, output: str,
                 error: Optional[ConsoleError] = None) -> FlashOutcome:
        return FlashOutcome(
            ok=ok,
            output=output,
            error=error,
            stage=stage,
            dialect=attempt.dialect,
            stop_command=attempt.stop_command,
            shell_name=attempt.shell_name,
            flash_bootloader=attempt.flash_bootloader,
            completed=list(attempt.completed),
        )

    def run(self, context: SessionContext) -> FlashOutcome:
        """
        Run one full attempt against ``context`` (read-only here).

        Returns:
            FlashOutcome; ``ok`` is False when a stage failed
        """
        attempt = Attempt(
            context=context,
            config=self.config,
            flash_bootloader=context.flash_bootloader,
        )
        name: Optional[str] = self.first
        last_stage, last_output = "", ""

        while name is not None:
            stage = self.stages[name]
            if not stage.enabled(attempt):
                logger.debug(f"Skipping stage {stage.name}")
                if stage.on_skip is not None:
                    stage.on_skip(attempt)
                name = stage.on_success
                continue

            if stage.announce:
                logger.info(stage.announce)
            if stage.flush_before:
                self.session.discard_input()

            timeout = getattr(self.config.timeouts, stage.name)
            try:
                result = self.session.run_transaction(stage.script(attempt), timeout)
            except ConsoleError as e:
                recoverable = stage.on_failure is not None and not isinstance(e, ConsoleTransportError)
                if not recoverable:
                    logger.error(f"Stage {stage.name} failed: {e}")
                    return self._outcome(attempt, False, stage.name, e.output, e)
                if stage.failure_hint:
                    logger.warning(stage.failure_hint)
                logger.debug(f"Stage {stage.name} failed, continuing: {e}")
                name = stage.on_failure
                continue

            attempt.completed.append(stage.name)
            last_stage, last_output = stage.name, result.output
            if stage.apply is not None:
                stage.apply(attempt, result)
            if stage.settle:
                self.sleep(getattr(self.config.delays, stage.settle))
            name = stage.on_success

        return self._outcome(attempt, True, last_stage, last_output)
