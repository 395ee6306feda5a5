"""Audit trail — record builder, async pipeline, writer and retention sweeper."""
