from typing import NamedTuple

from roster_sync.models.roster import Admin, Section, Student, StudentSection, Teacher, TeacherSection, Term


class LinkDefinition(NamedTuple):
    """A many-to-many table owned by one entity type and pointing at members of another."""

    name: str
    model: type
    owner_column: str
    member_column: str
    member_type: str


class EntityDefinition(NamedTuple):
    entity_type: str
    model: type
    fields: tuple[str, ...]
    links: tuple[LinkDefinition, ...] = ()


SECTION_LINKS = (
    LinkDefinition(
        name="students",
        model=StudentSection,
        owner_column="section_source_id",
        member_column="student_source_id",
        member_type="student",
    ),
    LinkDefinition(
        name="teachers",
        model=TeacherSection,
        owner_column="section_source_id",
        member_column="teacher_source_id",
        member_type="teacher",
    ),
)

ENTITY_DEFINITIONS: dict[str, EntityDefinition] = {
    "term": EntityDefinition(
        entity_type="term",
        model=Term,
        fields=("name", "start_date", "end_date"),
    ),
    "student": EntityDefinition(
        entity_type="student",
        model=Student,
        fields=("first_name", "middle_name", "last_name", "email", "grade", "student_number", "state_id"),
    ),
    "teacher": EntityDefinition(
        entity_type="teacher",
        model=Teacher,
        fields=("first_name", "last_name", "email", "title", "teacher_number"),
    ),
    "section": EntityDefinition(
        entity_type="section",
        model=Section,
        fields=("name", "period", "subject", "grade", "course_id", "term_id"),
        links=SECTION_LINKS,
    ),
    "admin": EntityDefinition(
        entity_type="admin",
        model=Admin,
        fields=("first_name", "last_name", "email", "title"),
    ),
}


def get_entity_definition(entity_type: str) -> EntityDefinition | None:
    return ENTITY_DEFINITIONS.get(entity_type)


def resolve_entity_definitions(entity_types: list[str]) -> list[EntityDefinition]:
    definitions = []
    for entity_type in entity_types:
        definition = get_entity_definition(entity_type)
        if definition is None:
            raise ValueError(f"Unknown entity type: {entity_type}")
        definitions.append(definition)
    return definitions


def links_referencing(entity_type: str) -> list[tuple[LinkDefinition, str]]:
    """Link tables holding ``entity_type`` source ids, with the column that holds them."""
    references = []
    for definition in ENTITY_DEFINITIONS.values():
        for link in definition.links:
            if definition.entity_type == entity_type:
                references.append((link, link.owner_column))
            if link.member_type == entity_type:
                references.append((link, link.member_column))
    return references
