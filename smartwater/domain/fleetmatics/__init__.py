"""Fleetmatics domain - GPS vehicle tracking integration"""
