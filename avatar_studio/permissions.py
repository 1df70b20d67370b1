"""
Relation-tuple permission checks for projects.

A tuple (namespace="project", object_id, relation, subject_id) grants a user
a relation on a project. Relations nest: owner ⊇ editor ⊇ viewer. The
project's creator is always its owner.
"""

import logging

from .models import Relation

logger = logging.getLogger(__name__)

RELATION_RANK = {
    Relation.VIEWER: 1,
    Relation.EDITOR: 2,
    Relation.OWNER: 3,
}


def can_access(client, user_id: str, project_id: str, relation: Relation | str) -> bool:
    """True if ``user_id`` holds ``relation`` (or a stronger one) on the project."""
    if not user_id:
        return False
    required = RELATION_RANK[Relation(relation)]

    projects = client.table("projects").select("user_id").eq("id", project_id).limit(1).execute().data
    if projects and projects[0].get("user_id") == user_id:
        return True

    rows = (
        client.table("relation_tuples")
        .select("relation")
        .eq("namespace", "project")
        .eq("object_id", project_id)
        .eq("subject_id", user_id)
        .execute()
        .data
    ) or []

    for row in rows:
        try:
            if RELATION_RANK[Relation(row["relation"])] >= required:
                return True
        except ValueError:
            logger.warning(f"Unknown relation '{row.get('relation')}' on project {project_id}")
    return False


def require_access(client, user_id: str, project_id: str, relation: Relation | str):
    """Raise PermissionError unless the user holds ``relation`` on the project."""
    if not can_access(client, user_id, project_id, relation):
        raise PermissionError(f"User {user_id or '<anonymous>'} lacks {Relation(relation).value} on project {project_id}")
