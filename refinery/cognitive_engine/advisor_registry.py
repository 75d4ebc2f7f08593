"""Advisor definitions and the registry that validates and orders them."""

from typing import Dict, Iterable, List, Literal, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

from refinery.domain.errors import ConfigurationError
from refinery.domain.schema import PATCH_PATHS

PRODUCT_TYPES = ("web", "mobile-native", "mobile-web", "desktop", "api")

AdvisorCategory = Literal["roles", "elements", "validation", "quality", "responsive", "i18n", "analytics"]


class AdvisorDefinition(BaseModel):
    """A single-purpose reviewer and the fixed set of paths it may patch."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(description="Stable advisor identifier, e.g. 'accessibility'")
    name: str = Field(description="Display name")
    description: str = Field(description="Purpose, used by the evaluator's relevance check")
    prompt: str = Field(description="Topic instructions for the oracle")
    category: AdvisorCategory
    order: int = Field(description="Position in the workflow ordering")
    scope: Tuple[str, ...] = Field(description="Patch paths this advisor may edit")
    applicable_to: Union[Literal["all"], Tuple[str, ...]] = "all"

    def is_applicable(self, product_type: Optional[str]) -> bool:
        """True when the advisor applies to ``product_type`` (unknown product types always apply)."""
        if self.applicable_to == "all" or product_type is None:
            return True
        return product_type in self.applicable_to


BUILTIN_ADVISORS: Tuple[AdvisorDefinition, ...] = (
    AdvisorDefinition(
        id="user-roles",
        name="User Roles",
        description="Identifies user roles and the permission differences between them",
        prompt="""Identify the user roles that interact with this story and how their experience differs.

- Sharpen the "As a" line when the role is vague ("user") but the story evidence names a specific role.
- Describe role-specific visible behavior (what each role sees or can do).
- Add outcome criteria for permission boundaries (e.g. a viewer cannot edit).

Only describe roles the story or product context actually implies.""",
        category="roles",
        order=1,
        scope=("story.asA", "userVisibleBehavior", "outcomeAcceptanceCriteria"),
    ),
    AdvisorDefinition(
        id="interactive-elements",
        name="Interactive Elements",
        description="Documents buttons, inputs, links, icons and their interaction states",
        prompt="""Document the interactive elements of this story from the user's perspective.

- Buttons, inputs, links and icons, with their purpose.
- Interaction states: default, hover, focus, active, disabled, loading.
- What the user sees after each interaction.

Use product language. Do not name implementation components.""",
        category="elements",
        order=2,
        scope=("userVisibleBehavior", "outcomeAcceptanceCriteria"),
    ),
    AdvisorDefinition(
        id="validation",
        name="Validation Rules",
        description="Identifies form field validation rules and user feedback requirements",
        prompt="""Identify input validation rules and the feedback the user receives.

- Required fields, formats, lengths and allowed values.
- When validation runs (on blur, on submit) and how errors are shown.
- Edge cases such as pasted input, whitespace-only values and limits.

Every criterion must be binary (pass/fail).""",
        category="validation",
        order=3,
        scope=("outcomeAcceptanceCriteria", "systemAcceptanceCriteria", "edgeCases"),
    ),
    AdvisorDefinition(
        id="accessibility",
        name="Accessibility Requirements",
        description="Identifies WCAG compliance and accessibility requirements for inclusive design",
        prompt="""Identify accessibility requirements from the user's perspective.

- Keyboard navigation: tab order, focus management, shortcuts.
- Screen reader support: labels, announcements of state changes and errors.
- Visible focus indicators and sufficient contrast (describe the need, not ratios or colors).

Outcome criteria describe what the user experiences; system criteria describe what the system guarantees.""",
        category="quality",
        order=4,
        scope=("outcomeAcceptanceCriteria", "systemAcceptanceCriteria"),
    ),
    AdvisorDefinition(
        id="performance",
        name="Performance Requirements",
        description=(
            "Identifies user-perceived performance requirements including load times, "
            "response times, and loading feedback"
        ),
        prompt="""Identify user-perceived performance requirements.

- Response time expectations for the story's key actions.
- Loading feedback while the user waits (skeletons, spinners, progress).
- Notes on data volume, caching or pagination that affect perceived speed.

Only add numeric targets when the product context supplies them.""",
        category="quality",
        order=5,
        scope=(
            "systemAcceptanceCriteria",
            "implementationNotes.performanceNotes",
            "implementationNotes.loadingStates",
        ),
    ),
    AdvisorDefinition(
        id="security",
        name="Security Requirements",
        description="Identifies authentication, authorization and data protection requirements",
        prompt="""Identify security requirements that apply to this story.

- Authentication and authorization checks for each action.
- Protection of sensitive data in transit, at rest and on screen.
- Abuse cases: rate limiting, replay, enumeration.

Do not invent compliance regimes the product context does not mention.""",
        category="quality",
        order=6,
        scope=("systemAcceptanceCriteria", "implementationNotes.securityNotes"),
    ),
    AdvisorDefinition(
        id="responsive-web",
        name="Responsive Web Requirements",
        description=(
            "Identifies responsive design requirements for web applications focusing on "
            "functional behaviors across breakpoints"
        ),
        prompt="""Identify how the story behaves across screen sizes in a browser.

- Layout changes that affect what the user can see or do.
- Touch versus pointer interaction differences.
- Content that collapses, hides or reflows at narrow widths.

Describe functional behavior, not pixel values.""",
        category="responsive",
        order=7,
        scope=("userVisibleBehavior", "systemAcceptanceCriteria"),
        applicable_to=("web", "mobile-web", "desktop"),
    ),
    AdvisorDefinition(
        id="responsive-native",
        name="Responsive Native Requirements",
        description="Identifies native mobile layout, orientation and platform convention requirements",
        prompt="""Identify native mobile behavior for this story.

- Orientation changes, safe areas and keyboard overlap.
- Platform conventions (back navigation, gestures).
- Behavior on small and large devices.""",
        category="responsive",
        order=8,
        scope=("userVisibleBehavior", "systemAcceptanceCriteria"),
        applicable_to=("mobile-native",),
    ),
    AdvisorDefinition(
        id="language-support",
        name="Language Support",
        description="Identifies translation, text expansion and right-to-left language requirements",
        prompt="""Identify language support requirements.

- Translatable text and text expansion in longer languages.
- Right-to-left layout where the product targets such locales.
- Language selection and fallback behavior.""",
        category="i18n",
        order=9,
        scope=("outcomeAcceptanceCriteria", "systemAcceptanceCriteria"),
    ),
    AdvisorDefinition(
        id="locale-formatting",
        name="Locale Formatting",
        description=(
            "Identifies locale-specific formatting requirements focusing on user experience "
            "of formatted data"
        ),
        prompt="""Identify locale-specific formatting the user will see.

- Dates, times and time zones.
- Numbers, currencies and units.
- Sorting and name/address formats.""",
        category="i18n",
        order=10,
        scope=("outcomeAcceptanceCriteria",),
    ),
    AdvisorDefinition(
        id="cultural-appropriateness",
        name="Cultural Appropriateness",
        description=(
            "Identifies cultural sensitivity requirements focusing on user experience of "
            "culturally appropriate interfaces"
        ),
        prompt="""Identify cultural sensitivity concerns in this story.

- Imagery, icons, colors and symbols with regional meaning.
- Assumptions about names, gender, family structure or holidays.
- Record anything you cannot resolve from the evidence as an open question.""",
        category="i18n",
        order=11,
        scope=("outcomeAcceptanceCriteria", "openQuestions"),
    ),
    AdvisorDefinition(
        id="analytics",
        name="Analytics",
        description=(
            "Identifies analytics requirements focusing on user behavior patterns and "
            "experience insights"
        ),
        prompt="""Identify analytics needed to understand how users experience this story.

- Key interactions and outcomes worth measuring.
- Funnel or drop-off points.
- Telemetry notes naming the events, without inventing event ids absent from the system context.""",
        category="analytics",
        order=12,
        scope=("systemAcceptanceCriteria", "implementationNotes.telemetryNotes"),
    ),
)


class AdvisorRegistry:
    """Validated, ordered collection of advisor definitions."""

    def __init__(self, definitions: Optional[Iterable[AdvisorDefinition]] = None):
        """Initialize registry.

        Args:
            definitions: Advisor definitions (defaults to the built-in advisors).

        Raises:
            ConfigurationError: Duplicate ids, or a scope table that is empty or names
                unknown paths, or an unknown product type.
        """
        items = list(BUILTIN_ADVISORS if definitions is None else definitions)
        self._advisors: Dict[str, AdvisorDefinition] = {}
        for definition in items:
            self._check(definition)
            if definition.id in self._advisors:
                raise ConfigurationError(f"Duplicate advisor definition: {definition.id!r}")
            self._advisors[definition.id] = definition

    @staticmethod
    def _check(definition: AdvisorDefinition) -> None:
        if not definition.scope:
            raise ConfigurationError(f"Advisor {definition.id!r} declares an empty scope")
        unknown = [path for path in definition.scope if path not in PATCH_PATHS]
        if unknown:
            raise ConfigurationError(
                f"Advisor {definition.id!r} declares unknown scope paths: {', '.join(unknown)}"
            )
        if definition.applicable_to != "all":
            bad = [t for t in definition.applicable_to if t not in PRODUCT_TYPES]
            if bad or not definition.applicable_to:
                raise ConfigurationError(
                    f"Advisor {definition.id!r} declares unknown product types: {', '.join(bad)}"
                )

    def get(self, advisor_id: str) -> AdvisorDefinition:
        try:
            return self._advisors[advisor_id]
        except KeyError:
            raise ConfigurationError(f"Unknown advisor identifier: {advisor_id!r}") from None

    def resolve(self, advisor_ids: Sequence[str]) -> List[AdvisorDefinition]:
        """Look up advisors in the caller's order, failing on the first unknown id."""
        return [self.get(advisor_id) for advisor_id in advisor_ids]

    def applicable_for(self, product_type: Optional[str]) -> List[AdvisorDefinition]:
        """Advisors applicable to ``product_type``, in workflow order."""
        return [advisor for advisor in self.all() if advisor.is_applicable(product_type)]

    def all(self) -> List[AdvisorDefinition]:
        return sorted(self._advisors.values(), key=lambda advisor: advisor.order)

    def name_of(self, advisor_id: str) -> str:
        """Display name for ``advisor_id``, or the id itself when unregistered."""
        advisor = self._advisors.get(advisor_id)
        return advisor.name if advisor else advisor_id

    def __len__(self) -> int:
        return len(self._advisors)
