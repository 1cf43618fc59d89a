"""Shared helpers for the freight ledger core"""
