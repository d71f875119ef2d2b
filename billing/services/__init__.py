"""Fetch, enrichment, persistence and action services"""
