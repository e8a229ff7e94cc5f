"""
Threadboard URL Configuration
"""
from django.contrib import admin
from django.urls import path, include
from django.http import JsonResponse


def api_root(request):
    """Root endpoint with API information."""
    return JsonResponse({
        'message': 'Threadboard API Server',
        'version': '1.0',
        'endpoints': {
            'posts': '/api/posts/',
            'my_posts': '/api/posts/mine/',
            'post': '/api/posts/<id>/',
            'comments': '/api/posts/<id>/comments/',
            'replies': '/api/comments/<id>/replies/',
            'like': '/api/<posts|comments>/<id>/like/',
            'toggle_like': '/api/likes/toggle/',
            'events': '/api/events/<post-created|post-updated|post-deleted|post-liked|'
                      'comment-created|comment-updated|comment-deleted|comment-liked>/',
        },
        'admin': '/admin/',
    })


urlpatterns = [
    path('', api_root, name='api-root'),
    path('admin/', admin.site.urls),
    path('api/', include('board.urls')),
]
