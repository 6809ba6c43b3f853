# workflow/urls.py
from django.urls import path
from .views import (
    HistoryFeedView,
    TaskApproveView,
    TaskAssigneesView,
    TaskHistoryView,
    TaskMoveView,
    TaskRejectView,
    TaskStatusView,
)

urlpatterns = [
    path('tasks/<uuid:pk>/move/', TaskMoveView.as_view(), name='task-move'),
    path('tasks/<uuid:pk>/approve/', TaskApproveView.as_view(), name='task-approve'),
    path('tasks/<uuid:pk>/reject/', TaskRejectView.as_view(), name='task-reject'),
    path('tasks/<uuid:pk>/assignees/', TaskAssigneesView.as_view(), name='task-assignees'),
    path('tasks/<uuid:pk>/assignees/<int:user_id>/', TaskAssigneesView.as_view(), name='task-unassign'),
    path('tasks/<uuid:pk>/status/', TaskStatusView.as_view(), name='task-status'),
    path('tasks/<uuid:pk>/history/', TaskHistoryView.as_view(), name='task-history'),
    path('history/', HistoryFeedView.as_view(), name='history-feed'),
]
