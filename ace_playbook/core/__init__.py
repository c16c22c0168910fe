"""Core playbook model, classifier, similarity and storage."""
