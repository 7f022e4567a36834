"""Scheduled copy-trading automation jobs"""
