"""
Operator Telegram bot — long-polling entry point.

Commands:
    /start | /help          show help
    /generate <prompt>      queue a new video job
    /status <job_id>        check a job
    /jobs                   list active jobs
    /approve <job_id>       upload a ready video
    /reject <job_id>        reject a ready video
    /retry <job_id>         retry a failed job
    /delete <job_id>        delete a job and its downloaded file
"""

import logging
import os

from telegram import Update
from telegram.ext import (
    Application,
    CommandHandler,
    MessageHandler,
    filters,
    ContextTypes,
)

from agent.errors import CapacityError, InvalidTransitionError, JobNotFoundError
from db.database import delete_job_cascade, get_job, list_active_jobs
from models.job import Job, JobStatus
from workers.job_worker import (
    approve_job,
    reject_job,
    retry_job,
    submit_job,
)

logger = logging.getLogger(__name__)

TELEGRAM_BOT_TOKEN: str = os.getenv("TELEGRAM_BOT_TOKEN", "")

# ── Help text ──────────────────────────────────────────────────────────────────

_HELP = """
Syntx Video Agent 🎬

/generate <prompt> — queue a new video
/status <job_id> — check a job
/jobs — list active jobs

/approve <job_id> — upload a ready video
/reject <job_id> — reject a ready video
/retry <job_id> — retry a failed job
/delete <job_id> — delete a job and its file

/help — show this message
""".strip()


def format_job(job: Job) -> str:
    lines = [f"Job {job.id}", f"Status: {job.status.value}"]
    if job.video_title:
        lines.append(f"Title: {job.video_title}")
    if job.status is JobStatus.READY and job.local_artifact_path:
        lines.append(f"File: {job.local_artifact_path}")
        lines.append(f"Use /approve {job.id} or /reject {job.id}")
    elif job.status is JobStatus.UPLOADED and job.storage_url:
        lines.append(f"Stored at: {job.storage_url}")
    elif job.status is JobStatus.ERROR:
        lines.append(f"Error: {job.error_message or 'Unknown'}")
    return "\n".join(lines)


# ── /help & /start ─────────────────────────────────────────────────────────────

async def help_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await update.message.reply_text(_HELP)


# ── /generate ──────────────────────────────────────────────────────────────────

async def generate_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    text = update.message.text or ""
    parts = text.split(None, 1)

    if len(parts) < 2 or not parts[1].strip():
        await update.message.reply_text(
            "Usage: /generate <prompt>\nExample: /generate a cat surfing at sunset"
        )
        return

    chat_id = update.effective_chat.id

    async def on_done(finished: Job) -> None:
        if finished.status is JobStatus.READY:
            await context.bot.send_message(
                chat_id=chat_id,
                text=f"Video ready 🎉\n\n{format_job(finished)}",
            )
        else:
            await context.bot.send_message(
                chat_id=chat_id,
                text=f"Video generation failed ❌\n\n{format_job(finished)}",
            )

    try:
        job = await submit_job(parts[1].strip(), on_done=on_done)
    except CapacityError as exc:
        await update.message.reply_text(f"⏳ {exc}")
        return

    await update.message.reply_text(
        f"Prompt queued 🎬\nJob ID: {job.id}\nI'll message you when the video is ready."
    )


# ── /status & /jobs ────────────────────────────────────────────────────────────

async def status_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    args = context.args
    if not args:
        await update.message.reply_text("Usage: /status <job_id>")
        return

    job = await get_job(args[0])
    if not job:
        await update.message.reply_text(f"Job {args[0]} not found.")
        return

    await update.message.reply_text(format_job(job))


async def jobs_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    jobs = await list_active_jobs()
    if not jobs:
        await update.message.reply_text("No active jobs.")
        return

    lines = "\n".join(f"• {j.id} — {j.status.value}" for j in jobs)
    await update.message.reply_text(f"Active jobs:\n{lines}")


# ── /approve /reject /retry /delete ────────────────────────────────────────────

async def _job_action(update: Update, context: ContextTypes.DEFAULT_TYPE, action, verb: str) -> None:
    args = context.args
    if not args:
        await update.message.reply_text(f"Usage: /{verb} <job_id>")
        return

    try:
        job = await action(args[0])
    except JobNotFoundError:
        await update.message.reply_text(f"Job {args[0]} not found.")
        return
    except InvalidTransitionError as exc:
        await update.message.reply_text(f"Cannot {verb}: {exc}")
        return
    except Exception as exc:
        logger.error("Error in /%s", verb, extra={"job_id": args[0], "error": str(exc)},
                     exc_info=True)
        await update.message.reply_text(f"Error: {exc}")
        return

    await update.message.reply_text(format_job(job))


async def approve_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await _job_action(update, context, approve_job, "approve")


async def reject_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await _job_action(update, context, reject_job, "reject")


async def retry_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await _job_action(update, context, retry_job, "retry")


async def delete_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    args = context.args
    if not args:
        await update.message.reply_text("Usage: /delete <job_id>")
        return

    if await delete_job_cascade(args[0]):
        await update.message.reply_text(f"Job {args[0]} deleted.")
    else:
        await update.message.reply_text(f"Job {args[0]} not found.")


# ── Fallback ───────────────────────────────────────────────────────────────────

async def fallback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await update.message.reply_text("Unknown command. Use /help to see available commands.")


# ── App factory ────────────────────────────────────────────────────────────────

def create_bot_app() -> Application:
    if not TELEGRAM_BOT_TOKEN:
        raise ValueError("TELEGRAM_BOT_TOKEN is not set in environment")

    app = Application.builder().token(TELEGRAM_BOT_TOKEN).build()

    app.add_handler(CommandHandler("start", help_command))
    app.add_handler(CommandHandler("help", help_command))
    app.add_handler(CommandHandler("generate", generate_command))
    app.add_handler(CommandHandler("status", status_command))
    app.add_handler(CommandHandler("jobs", jobs_command))
    app.add_handler(CommandHandler("approve", approve_command))
    app.add_handler(CommandHandler("reject", reject_command))
    app.add_handler(CommandHandler("retry", retry_command))
    app.add_handler(CommandHandler("delete", delete_command))
    app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, fallback))

    return app
