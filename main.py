"""Deep Research - dual-provider research runs

Simple CLI for running one topic end to end on the in-memory store.
"""

import argparse
import asyncio
import json
from pathlib import Path

from deep_research.agents.finalizer import ReportFinalizer
from deep_research.agents.orchestrator import RunOptions, SessionOrchestrator
from deep_research.agents.refinement import RefinementAgent
from deep_research.services.lane import OrchestratorState
from deep_research.services.locks import InProcessLocker
from deep_research.services.memory_store import InMemoryStore
from deep_research.tools.email_sender import StubEmailSender, build_email_sender
from deep_research.tools.pdf_report import StubReportRenderer, build_report_renderer
from deep_research.tools.providers import PROVIDER_LABELS, StubResearchProvider, build_providers


async def run_topic(args: argparse.Namespace) -> None:
    """Refine, research and report on one topic."""
    store = InMemoryStore()
    state = OrchestratorState(store=store, locker=InProcessLocker())
    if args.stub:
        providers = {name: StubResearchProvider(name) for name in PROVIDER_LABELS}
        renderer, email_sender = StubReportRenderer(), StubEmailSender()
    else:
        providers = build_providers()
        renderer, email_sender = build_report_renderer(), build_email_sender()

    finalizer = ReportFinalizer(store, state.locker, providers, renderer, email_sender)
    orchestrator = SessionOrchestrator(state, providers, finalizer=finalizer)
    agent = RefinementAgent(orchestrator)

    user_id = await store.ensure_user(args.email)
    session = await store.create_session(user_id, args.topic)
    print(f"Research topic: {args.topic}")
    print("-" * 50)

    questions = await agent.run_refinement(session.id)
    answers = list(args.answer or [])
    for question in questions:
        answer = answers.pop(0) if answers else "No preference."
        print(f"[?] {question.question_text}\n    -> {answer}")
        await agent.answer_question(question.id, answer)

    options = RunOptions(skip_openai=args.skip_openai, skip_gemini=args.skip_gemini)
    print("\n[~] Running providers...")
    await agent.handle_refinement_approval(session.id, options=options)

    session = await store.get_session(session.id)
    print(f"\n[*] Session {session.id}: {session.state}")
    for result in await store.list_provider_results(session.id):
        detail = f" ({result.error_message})" if result.error_message else ""
        print(f"  {PROVIDER_LABELS[result.provider]}: {result.status}{detail}")

    report = await store.get_latest_report(session.id)
    if report is None:
        print("\n[!] No report generated")
        return
    print(f"\nReport: {report.summary_text} | email {report.email_status}")
    if args.pdf and report.pdf_bytes:
        Path(args.pdf).write_bytes(report.pdf_bytes)
        print(f"PDF written to {args.pdf}")
    if args.dump:
        print(json.dumps(store.dump(), indent=2, default=str))


def main():
    parser = argparse.ArgumentParser(description="Deep Research orchestration CLI")
    parser.add_argument("--topic", "-t", required=True, help="Research topic")
    parser.add_argument("--email", "-e", default="cli@example.com", help="Report recipient")
    parser.add_argument("--answer", "-a", action="append", help="Answer for the next clarifying question")
    parser.add_argument("--stub", action="store_true", help="Use offline stub providers, PDF and email")
    parser.add_argument("--skip-openai", action="store_true")
    parser.add_argument("--skip-gemini", action="store_true")
    parser.add_argument("--pdf", help="Write the report PDF to this path")
    parser.add_argument("--dump", action="store_true", help="Print the in-memory store at the end")

    args = parser.parse_args()

    asyncio.run(run_topic(args))


if __name__ == "__main__":
    main()
