"""Random, workplace-friendly names for new dashboards.

Three formats, picked by weight:
1. Descriptor + reference (40%): "Mildly Chaotic Projects"
2. Team + concept (35%): "Team Coffee Station"
3. Situational phrase (25%): "Meeting That Could've Been an Email"
"""

import random

FALLBACK_NAME = "Untitled Dashboard"

DESCRIPTORS = (
    "Mildly Chaotic",
    "Slightly Overdue",
    "Perfectly Organized",
    "Surprisingly Smooth",
    "Cautiously Optimistic",
    "Delightfully Confusing",
    "Strategically Delayed",
    "Accidentally Brilliant",
    "Moderately Ambitious",
    "Refreshingly Simple",
    "Pleasantly Overwhelming",
    "Creatively Structured",
    "Diplomatically Urgent",
    "Professionally Scattered",
)

REFERENCES = (
    "Projects",
    "Tasks",
    "Deliverables",
    "Initiatives",
    "Objectives",
    "Mission Control",
    "Operations",
    "Dashboard",
    "Hub",
    "Command Center",
    "Workspace",
    "Chronicles",
    "Adventures",
    "Endeavors",
)

TEAM_CONCEPTS = (
    "Coffee Station",
    "Snack Inventory",
    "Whiteboard Wisdom",
    "Supply Closet",
    "Break Room",
    "Printer Chronicles",
    "Meeting Notes",
    "Desk Plant",
    "Lost and Found",
    "Time Machine",
    "File Cabinet",
    "Water Cooler",
    "Brainstorm Central",
    "Sticky Note Collection",
    "Calendar Chaos",
    "Email Archive",
)

SITUATIONAL_NAMES = (
    "Meeting That Could've Been an Email",
    "Strategic Nap Planning",
    "Professional Procrastinators",
    "Last-Minute Miracle Workers",
    "Caffeine-Powered Excellence",
    "Organized Chaos Theory",
    "Work-From-Home Warriors",
    "Deadline Dodgers United",
    "Productive Procrastination",
    "Monday Morning Motivation",
    "Friday Afternoon Focus",
    "Multitasking Masterclass",
    "Controlled Mayhem",
    "Structured Spontaneity",
    "Efficient Inefficiency",
    "Planned Improvisation",
)

# Percentage weights for the three formats, in order
FORMAT_WEIGHTS = (40, 35, 25)


class DashboardNameGenerator:
    """Generates dashboard names; returns the fallback when disabled.

    Attributes:
        enabled: When False, every name is ``"Untitled Dashboard"``
    """

    def __init__(self, rng: random.Random | None = None, enabled: bool = True) -> None:
        self.rng = rng or random.Random()
        self.enabled = enabled

    def generate(self) -> str:
        if not self.enabled:
            return FALLBACK_NAME

        roll = self.rng.random() * 100
        descriptor_weight, team_weight, _ = FORMAT_WEIGHTS
        if roll < descriptor_weight:
            return f"{self.rng.choice(DESCRIPTORS)} {self.rng.choice(REFERENCES)}"
        if roll < descriptor_weight + team_weight:
            return f"Team {self.rng.choice(TEAM_CONCEPTS)}"
        return self.rng.choice(SITUATIONAL_NAMES)

    def generate_many(self, count: int = 10) -> list[str]:
        return [self.generate() for _ in range(count)]
