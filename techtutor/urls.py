from django.urls import include, path

from chat import views

urlpatterns = [
    path("", views.index, name="index"),
    path("chat", views.index, name="chat_page"),
    path("", include("chat.urls")),
]
