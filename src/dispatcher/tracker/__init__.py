"""GitLab tracker integration: issue models, API client and label service."""
