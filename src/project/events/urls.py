# events/urls.py
from django.urls import path

from . import views
from . import views_extra as vx

urlpatterns = [
    # Public pages
    path('', views.event_list, name='event_list'),
    path('<slug:slug>/', views.event_detail, name='event_detail'),
    path('<slug:slug>/register/', views.register_legacy, name='register_legacy'),
    path('<slug:slug>/register/form/', views.register_dynamic, name='register_dynamic'),
    path('<slug:slug>/register/submit/', views.submit_registration_api, name='submit_registration_api'),

    # Staff: form builder
    path('manage/<int:event_id>/form/', vx.form_builder, name='form_builder'),
    path('manage/<int:event_id>/form/settings/', vx.form_settings, name='form_settings'),
    path('manage/<int:event_id>/form/toggle/', vx.form_toggle, name='form_toggle'),
    path('manage/<int:event_id>/form/fields/add/', vx.field_add, name='field_add'),
    path('manage/fields/<int:field_id>/edit/', vx.field_edit, name='field_edit'),
    path('manage/fields/<int:field_id>/delete/', vx.field_delete, name='field_delete'),
    path('manage/fields/<int:field_id>/reorder/', vx.field_reorder, name='field_reorder'),

    # Staff: submissions and exports
    path('manage/<int:event_id>/registrations/', vx.event_submissions, name='event_submissions'),
    path('manage/<int:event_id>/registrations/submissions.csv', vx.export_submissions, name='export_submissions'),
    path('manage/<int:event_id>/registrations/legacy.csv', vx.export_registrations, name='export_registrations'),
    path('manage/registrations/<int:pk>/status/', vx.registration_status, name='registration_status'),
]
