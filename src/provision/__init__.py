"""Declarative provisioning engine.

Builds a dependency-ordered Plan from manifest Actions and walks it,
applying each Action through a backend adapter while recording per-Action
outcomes in a durable state store so re-runs skip finished work.
"""
