"""Appointment domain - booking requests and their lifecycle"""
