"""Quorum Broker API Package"""
