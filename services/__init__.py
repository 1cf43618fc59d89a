"""Ledger, escrow, commission and account services"""
