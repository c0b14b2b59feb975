"""Clinica appointment scheduling and availability service"""
