# apps/api/urls.py

from django.urls import path
from .views import (
    conduct_draw_view,
    next_states_view,
    transition_view,
    verify_document_uuid_view,
    verify_document_view,
    verify_draw_view,
)

urlpatterns = [
    path("verify/<str:document_type>/<str:hash_sha256>/", verify_document_view),
    path("documents/<uuid:document_uuid>/verify/", verify_document_uuid_view),
    path("workflow/<str:kind>/next-states/", next_states_view),
    path("workflow/<str:kind>/<int:entity_id>/transition/", transition_view),
    path("schemes/<int:scheme_id>/draw/", conduct_draw_view),
    path("draw/<str:draw_id>/verify/", verify_draw_view),
]
