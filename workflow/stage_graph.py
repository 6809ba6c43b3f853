"""Stage ordering and validation for a project's pipeline.

Every project owns four reserved stages (suggested intake, backlog, completed
and archived) plus any number of custom and review stages. A stage's kind is
fixed when it is created; titles are for display only.
"""
import logging
from collections import Counter

from django.db import transaction
from django.db.models import Max, Q

from .exceptions import NoNextStageError, NotFoundError, ValidationError
from .models import RESERVED_KINDS, Stage, StageKind, Task

logger = logging.getLogger(__name__)

# (kind, title, order) for the stages every project starts with.
RESERVED_STAGES = (
    (StageKind.SUGGESTED, 'Suggested Task', 0),
    (StageKind.BACKLOG, 'Pending', 1),
    (StageKind.COMPLETED, 'Completed', 998),
    (StageKind.ARCHIVED, 'Archive', 999),
)
RESERVED_TITLES = {title.lower() for _, title, _ in RESERVED_STAGES}
CLOSING_ORDER = 998


def _norm(title):
    return (title or '').strip().lower()


class StageGraph:
    @staticmethod
    def resolve_default_next(stages, current):
        """Return the stage that follows ``current`` by order.

        Suggested intake and archived stages are never a default successor.
        Stages sharing an order are tie-broken by the lowest id.
        """
        candidates = [
            s for s in stages
            if s.order > current.order
            and s.kind not in (StageKind.SUGGESTED, StageKind.ARCHIVED)
            and s.pk != current.pk
        ]
        if not candidates:
            raise NoNextStageError(f"Stage '{current.title}' has no next stage")
        return min(candidates, key=lambda s: (s.order, s.pk))

    @staticmethod
    def resolve_next(current, stages):
        """Return the forward successor of a non-review stage."""
        if current.is_review_stage:
            raise ValidationError(
                f"Review stage '{current.title}' can only be left by approving the review"
            )
        if current.linked_next_stage_id:
            for stage in stages:
                if stage.pk == current.linked_next_stage_id:
                    return stage
            raise NotFoundError(f"Linked stage of '{current.title}' does not exist in this project")
        return StageGraph.resolve_default_next(stages, current)

    @staticmethod
    def validate(stages):
        """Check a project's stage set and return a list of ValidationError."""
        stages = list(stages)
        errors = []
        by_id = {s.pk: s for s in stages}

        kinds = Counter(s.kind for s in stages)
        for kind in RESERVED_KINDS:
            if kinds[kind] > 1:
                errors.append(ValidationError(f"Only one '{kind}' stage is allowed per project"))

        titles = Counter(_norm(s.title) for s in stages)
        for title, count in titles.items():
            if count > 1:
                errors.append(ValidationError(f"Stage title '{title}' is used more than once"))

        orders = Counter(s.order for s in stages)
        for order, count in orders.items():
            if count > 1:
                errors.append(ValidationError(f"Stage order {order} is used more than once"))

        for stage in stages:
            if not _norm(stage.title):
                errors.append(ValidationError('Stage title is required'))
            if not stage.is_reserved and _norm(stage.title) in RESERVED_TITLES:
                errors.append(ValidationError(f"'{stage.title}' is a reserved stage title"))
            if stage.is_review_stage != (stage.kind == StageKind.REVIEW):
                errors.append(ValidationError(f"Stage '{stage.title}' has an inconsistent review flag"))
            if stage.is_review_stage:
                if stage.approved_target_stage_id is None:
                    errors.append(ValidationError(
                        f"Review stage '{stage.title}' requires an approved target stage"
                    ))
                if stage.linked_next_stage_id is not None:
                    errors.append(ValidationError(
                        f"Review stage '{stage.title}' cannot define a linked next stage"
                    ))
            if stage.kind in (StageKind.CUSTOM, StageKind.REVIEW):
                if not (stage.main_responsible_id and stage.backup_responsible_1_id
                        and stage.backup_responsible_2_id):
                    errors.append(ValidationError(
                        f"Stage '{stage.title}' requires a main and two backup responsible users"
                    ))
            for field in ('approved_target_stage_id', 'linked_next_stage_id'):
                ref = getattr(stage, field)
                if ref is None:
                    continue
                target = by_id.get(ref)
                if target is None or target.project_id != stage.project_id:
                    errors.append(ValidationError(
                        f"Stage '{stage.title}' references a stage outside its project"
                    ))
                elif target.pk == stage.pk:
                    errors.append(ValidationError(f"Stage '{stage.title}' cannot reference itself"))
        return errors

    @staticmethod
    def ensure_reserved_stages(project):
        """Create the reserved stages a project is missing.

        A custom stage already carrying a reserved title is adopted as that
        reserved stage instead of creating a duplicate.
        """
        touched = []
        with transaction.atomic():
            existing = set(project.stages.values_list('kind', flat=True))
            for kind, title, order in RESERVED_STAGES:
                if kind in existing:
                    continue
                stage = project.stages.filter(title__iexact=title, kind=StageKind.CUSTOM).first()
                if stage is not None:
                    stage.kind = kind
                    stage.order = order
                    stage.save(update_fields=['kind', 'order', 'updated_at'])
                    logger.info("Adopted stage %s as reserved %s stage of project %s", stage.pk, kind, project.pk)
                else:
                    stage = project.stages.create(title=title, kind=kind, order=order)
                    logger.info("Created reserved %s stage for project %s", kind, project.pk)
                touched.append(stage)
        return touched

    @staticmethod
    def stage_of_kind(project, kind):
        try:
            return project.stages.get(kind=kind)
        except Stage.DoesNotExist:
            raise NotFoundError(f"Project {project.pk} has no '{kind}' stage")

    @staticmethod
    def create_stage(project, **fields):
        kind = fields.pop('kind', None)
        if kind is None:
            kind = StageKind.REVIEW if fields.get('is_review_stage') else StageKind.CUSTOM
        if kind in RESERVED_KINDS:
            raise ValidationError(f"'{kind}' stages are created by the system")
        with transaction.atomic():
            current = list(project.stages.select_for_update())
            if 'order' not in fields:
                top = project.stages.filter(order__lt=CLOSING_ORDER).aggregate(top=Max('order'))['top']
                fields['order'] = (top or 0) + 1
            stage = Stage(project=project, kind=kind, **fields)
            errors = StageGraph.validate(current + [stage])
            if errors:
                raise ValidationError(*[m for e in errors for m in e.messages])
            stage.save()
        logger.info("Created stage %s (%s) in project %s", stage.pk, stage.title, project.pk)
        return stage

    @staticmethod
    def update_stage(stage, **changes):
        if stage.is_reserved:
            for field in ('title', 'kind', 'is_review_stage'):
                if field in changes and changes[field] != getattr(stage, field):
                    raise ValidationError(f"Reserved stage '{stage.title}' cannot change its {field}")
        elif changes.get('kind') in RESERVED_KINDS:
            raise ValidationError(f"'{changes['kind']}' stages are created by the system")
        if 'is_review_stage' in changes and 'kind' not in changes and not stage.is_reserved:
            changes['kind'] = StageKind.REVIEW if changes['is_review_stage'] else StageKind.CUSTOM

        with transaction.atomic():
            others = list(stage.project.stages.select_for_update().exclude(pk=stage.pk))
            for field, value in changes.items():
                setattr(stage, field, value)
            errors = StageGraph.validate(others + [stage])
            if errors:
                stage.refresh_from_db()
                raise ValidationError(*[m for e in errors for m in e.messages])
            stage.save()
        logger.info("Updated stage %s: %s", stage.pk, ', '.join(sorted(changes)))
        return stage

    @staticmethod
    def delete_stage(stage):
        if stage.is_reserved:
            raise ValidationError(f"Reserved stage '{stage.title}' cannot be deleted")
        with transaction.atomic():
            if Task.objects.filter(Q(stage=stage) | Q(start_stage=stage)).exists():
                raise ValidationError(f"Stage '{stage.title}' still has tasks; reassign them first")
            referencing = Stage.objects.filter(
                Q(linked_next_stage=stage) | Q(approved_target_stage=stage)
            ).exclude(pk=stage.pk)
            if referencing.exists():
                titles = ', '.join(s.title for s in referencing)
                raise ValidationError(f"Stage '{stage.title}' is referenced by {titles}")
            stage_id = stage.pk
            stage.delete()
        logger.info("Deleted stage %s", stage_id)
