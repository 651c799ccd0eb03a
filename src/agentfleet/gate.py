from __future__ import annotations

GATE_MESSAGE = (
    "[GATE: Check active agents first]\n\n"
    "Before spawning a new agent, run agent_list to see active agents.\n"
    "If a relevant agent exists, continue that agent instead of spawning a new one."
)


class AdvisoryGate:
    """One-shot nudge to list workers before spawning fresh ones.

    Nothing here prevents concurrent spawns; callers decide where to consult it.
    """

    def __init__(self) -> None:
        self.checked = False

    @property
    def is_open(self) -> bool:
        return self.checked

    def mark_listed(self) -> None:
        self.checked = True

    def try_pass(self) -> bool:
        """Return whether a spawn may proceed.

        A refusal arms the gate, so the following attempt passes.
        """
        if not self.checked:
            self.checked = True
            return False
        return True

    def consume(self) -> None:
        self.checked = False

    def reset(self) -> None:
        self.checked = False
