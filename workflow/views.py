# workflow/views.py
from rest_framework.views import APIView
from rest_framework.response import Response
from django.utils import timezone
import datetime
from rest_framework import status
from .models import Task
from .serializers import (
    AssigneeStatusSerializer,
    AssignSerializer,
    MoveSerializer,
    CompletionPayloadSerializer,
    RejectSerializer,
    TaskHistorySerializer,
    TaskSerializer,
)
from .history import HistoryRecorder
from .state_machine import CompletionPayload, TaskStateMachine

PAYLOAD_KEYS = ('comment', 'links', 'files')


def _get_task(pk):
    return Task.objects.filter(pk=pk, deleted_at__isnull=True).first()


def _not_found(pk):
    return Response({'errors': [f"Task {pk} does not exist"]}, status=status.HTTP_404_NOT_FOUND)


def _invalid(serializer):
    return Response({'errors': [serializer.errors]}, status=status.HTTP_400_BAD_REQUEST)


def _payload(request, data):
    """Build a completion payload only when the client sent one."""
    if not any(key in request.data for key in PAYLOAD_KEYS):
        return None
    return CompletionPayload(comment=data['comment'], links=data['links'], files=data['files'])


def _respond(result):
    """
    Map a transition result onto an HTTP response.

    Rejected transitions become {"errors": [...]} with the status code of the
    error class (400 validation, 403 permission, 404 not found, 409 conflict).
    Accepted ones return the task and the history rows they appended.
    """
    if not result.accepted:
        return Response({'errors': result.error.messages}, status=result.error.status_code)
    return Response({
        'task': TaskSerializer(result.task).data,
        'history': TaskHistorySerializer(result.history, many=True).data,
    }, status=status.HTTP_200_OK)


class TaskMoveView(APIView):
    """
    Move a task to another stage of its project (a Kanban drag).

    Request Body:
        stage (uuid): Target stage.
        from_stage (uuid, optional): Stage the task was dragged from; a mismatch is a 409.
        comment, links, files (optional): Completion payload, required for completed/archived targets.
    """

    def post(self, request, pk):
        task = _get_task(pk)
        if task is None:
            return _not_found(pk)
        serializer = MoveSerializer(data=request.data)
        if not serializer.is_valid():
            return _invalid(serializer)
        data = serializer.validated_data
        result = TaskStateMachine().move_to(
            task, data['stage'], request.user,
            completion_payload=_payload(request, data),
            from_stage_id=data['from_stage'],
        )
        return _respond(result)


class TaskApproveView(APIView):
    def post(self, request, pk):
        task = _get_task(pk)
        if task is None:
            return _not_found(pk)
        serializer = CompletionPayloadSerializer(data=request.data)
        if not serializer.is_valid():
            return _invalid(serializer)
        result = TaskStateMachine().approve_review(
            task, request.user, completion_payload=_payload(request, serializer.validated_data)
        )
        return _respond(result)


class TaskRejectView(APIView):
    def post(self, request, pk):
        task = _get_task(pk)
        if task is None:
            return _not_found(pk)
        serializer = RejectSerializer(data=request.data)
        if not serializer.is_valid():
            return _invalid(serializer)
        return _respond(TaskStateMachine().reject_review(task, request.user, serializer.validated_data['comment']))


class TaskAssigneesView(APIView):
    """
    Replace a task's assignees (POST, ordered list, first is primary) or
    remove one of them (DELETE with the user id in the path).
    """

    def post(self, request, pk):
        task = _get_task(pk)
        if task is None:
            return _not_found(pk)
        serializer = AssignSerializer(data=request.data)
        if not serializer.is_valid():
            return _invalid(serializer)
        return _respond(TaskStateMachine().assign(task, serializer.validated_data['user_ids'], request.user))

    def delete(self, request, pk, user_id):
        task = _get_task(pk)
        if task is None:
            return _not_found(pk)
        return _respond(TaskStateMachine().unassign(task, user_id, request.user))


class TaskStatusView(APIView):
    """Set the requesting user's own completion flag on a task."""

    def post(self, request, pk):
        task = _get_task(pk)
        if task is None:
            return _not_found(pk)
        serializer = AssigneeStatusSerializer(data=request.data)
        if not serializer.is_valid():
            return _invalid(serializer)
        result = TaskStateMachine().set_assignee_status(
            task, request.user.pk, serializer.validated_data['status'], request.user
        )
        return _respond(result)


class TaskHistoryView(APIView):
    def get(self, request, pk):
        task = Task.objects.filter(pk=pk).first()
        if task is None:
            return _not_found(pk)
        return Response(TaskHistorySerializer(HistoryRecorder.for_task(task), many=True).data)


class HistoryFeedView(APIView):
    """
    Pull changes for reporting consumers since the last pull.

    Query Parameters:
        last_pulled_at (str): Timestamp in milliseconds since Unix epoch representing the last pull.

    Returns:
        Response: {"changes": {"tasks": {...}, "history": {"created": [...]}}, "timestamp": <ms>}
        History rows are append-only, so they only ever appear under "created".
    """

    def get(self, request):
        last_pulled_at_str = request.query_params.get('last_pulled_at')
        if last_pulled_at_str:
            try:
                last_pulled_at = datetime.datetime.fromtimestamp(
                    int(last_pulled_at_str) / 1000, tz=datetime.timezone.utc
                )
            except (ValueError, OverflowError, OSError):
                return Response({'errors': ['last_pulled_at must be milliseconds since epoch']},
                                status=status.HTTP_400_BAD_REQUEST)
        else:
            last_pulled_at = datetime.datetime.min.replace(tzinfo=datetime.timezone.utc)

        tasks_created = Task.objects.filter(created_at__gt=last_pulled_at, deleted_at__isnull=True)
        tasks_updated = Task.objects.filter(
            updated_at__gt=last_pulled_at, created_at__lte=last_pulled_at, deleted_at__isnull=True
        )
        tasks_deleted = Task.objects.filter(deleted_at__gt=last_pulled_at).values_list('id', flat=True)

        changes = {
            'tasks': {
                'created': TaskSerializer(tasks_created, many=True).data,
                'updated': TaskSerializer(tasks_updated, many=True).data,
                'deleted': list(tasks_deleted),
            },
            'history': {
                'created': TaskHistorySerializer(HistoryRecorder.since(last_pulled_at), many=True).data,
            },
        }

        current_timestamp = int(timezone.now().timestamp() * 1000)
        return Response({'changes': changes, 'timestamp': current_timestamp})
