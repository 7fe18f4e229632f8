"""Identity of a running step, used to scope its meters and events."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class StepStartStopContext:
    """Context passed to the components when their step starts or stops.

    Attributes:
        campaign: Name of the running campaign
        scenario: Name of the scenario owning the step
        step: Name of the step
        extra_tags: Additional tags added to meters and events
    """

    campaign: str = ""
    scenario: str = ""
    step: str = ""
    extra_tags: dict[str, str] = field(default_factory=dict)

    def to_meters_tags(self) -> dict[str, str]:
        tags = {"campaign": self.campaign, "scenario": self.scenario, "step": self.step}
        tags.update(self.extra_tags)
        return tags

    def to_event_tags(self) -> dict[str, str]:
        tags = {key: value for key, value in self.to_meters_tags().items() if value}
        return tags
