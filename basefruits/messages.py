from __future__ import annotations

import random
from typing import Sequence

REMINDER_MESSAGES: tuple[str, ...] = (
    "Leaderboard is heating up 🔥 — can you claim the top spot?",
    "Someone just beat your score! 👀 Time to take it back!",
    "Ready to slice some fruits today? 🍉 Jump back in!",
    "Your blades are waiting! 🍓 Cut them all before they fall!",
    "It's slicing time! ⚡ Can you beat yesterday's score?",
)


def pick_message(messages: Sequence[str], rng: random.Random | None = None) -> str:
    return (rng or random).choice(messages)
