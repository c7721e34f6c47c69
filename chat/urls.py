from django.urls import path
from . import views

urlpatterns = [
    path('health', views.health, name='health'),
    path('api/state', views.chat_state, name='chat_state'),
    path('api/chat', views.chat_completion, name='chat'),
    path('api/suggestions', views.list_suggestions, name='suggestions'),
    path('api/conversations/new', views.new_conversation, name='new_conversation'),
    path('api/conversations/<int:conv_id>/select', views.select_conversation, name='select_conversation'),
    path('api/conversations/<int:conv_id>', views.delete_conversation, name='delete_conversation'),
]
