"""Periodic maintenance jobs"""
