"""Sync engine services"""
