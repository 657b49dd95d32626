"""Resumable, interruption-safe retraining of a tab classifier.

The entry point is :class:`resumable_trainer.orchestration.orchestrator.TrainingOrchestrator`,
which gates training to a single active run and delegates to the
:class:`resumable_trainer.workers.manager.WorkerManager`.
"""
