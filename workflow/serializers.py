from rest_framework import serializers

from accounts.serializers import UserSerializer
from .models import AssigneeStatus, Attachment, Stage, Task, TaskAssignee, TaskHistory


class StageSerializer(serializers.ModelSerializer):
    class Meta:
        model = Stage
        fields = [
            'id', 'project', 'title', 'order', 'kind', 'is_review_stage', 'approved_target_stage',
            'linked_next_stage', 'main_responsible', 'backup_responsible_1', 'backup_responsible_2',
            'stage_group',
        ]


class TaskAssigneeSerializer(serializers.ModelSerializer):
    user = UserSerializer(read_only=True)

    class Meta:
        model = TaskAssignee
        fields = ['user', 'status', 'position']


class AttachmentSerializer(serializers.ModelSerializer):
    class Meta:
        model = Attachment
        fields = ['id', 'name', 'url', 'type', 'created_at']


class TaskSerializer(serializers.ModelSerializer):
    assignees = TaskAssigneeSerializer(many=True, read_only=True)

    class Meta:
        model = Task
        fields = [
            'id', 'project', 'stage', 'title', 'description', 'priority', 'due_date', 'start_date',
            'start_stage', 'assignee', 'assignees', 'tags', 'parent', 'status', 'completed_at',
            'has_auto_started', 'previous_stage', 'original_assignee',
            'version', 'created_at', 'updated_at',
        ]


class TaskHistorySerializer(serializers.ModelSerializer):
    class Meta:
        model = TaskHistory
        fields = [
            'id', 'task', 'actor', 'action', 'incoming_stage', 'outgoing_stage', 'incoming_user',
            'outgoing_user', 'previous_snapshot', 'details', 'created_at',
        ]


class CompletionPayloadSerializer(serializers.Serializer):
    comment = serializers.CharField(required=False, allow_blank=True, default='')
    links = serializers.ListField(child=serializers.CharField(), required=False, default=list)
    files = serializers.ListField(child=serializers.FileField(), required=False, default=list)


class MoveSerializer(CompletionPayloadSerializer):
    stage = serializers.UUIDField()
    from_stage = serializers.UUIDField(required=False, allow_null=True, default=None)


class RejectSerializer(serializers.Serializer):
    comment = serializers.CharField()


class AssignSerializer(serializers.Serializer):
    user_ids = serializers.ListField(child=serializers.IntegerField(), allow_empty=False)


class AssigneeStatusSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=AssigneeStatus.choices)
