# config.py
# This is a template configuration file for the GuildKeeper bot.
# Replace the placeholder values (like 0 or None) with your actual server, channel and role IDs.
# The bot token is NOT stored here: put BOT_TOKEN=... in a `.env` file next to bot.py.

# --- ⚙️ DISCORD SERVER CONFIGURATION ⚙️ ---
# How to get IDs: In Discord, go to User Settings > Advanced > enable Developer Mode.
# Then, right-click on your server icon, a channel or a role and select "Copy ID".

# (Optional) The server the background counters and the activity tracker run for.
# Leave as None to use the first server the bot is in.
GUILD_ID = None

# --- 🛡️ COMMAND ACCESS 🛡️ ---
# Commands are only accepted in these channels...
# Example: ALLOWED_CHANNELS = {123456789012345678, 234567890123456789}
ALLOWED_CHANNELS = {0}

# ...and only from members holding at least one of these roles.
# Case-sensitive role NAMES. Example: ALLOWED_ROLES = ["Moderator", "Server Admin"]
ALLOWED_ROLES = ["Admin"]

# --- ✅ VERIFICATION ✅ ---
# (Required) Members without this role are "unverified".
VERIFIED_ROLE_ID = 0

# (Optional) A role that should not count as anyone's highest role (e.g. a cosmetic or booster role).
# Members whose top role is this one are counted under their next-highest role instead.
IGNORED_ROLE_ID = None

# --- 📊 !count BUCKETS 📊 ---
# Up to 6 role IDs, in the order they should appear in the !count embed.
# Every verified member is counted once, under the bucket matching their highest role.
COUNT_ROLES = [
    0,
    0,
]

# --- 🔢 CHANNEL-NAME COUNTERS 🔢 ---
# Up to 6 (role_id, channel_id, name_format) entries. Every INTERVAL_MINUTES the channel is renamed
# with "{count}" replaced by the number of members in that role bucket.
# Example: SCHEDULED_ROLES = [(111111111111111111, 222222222222222222, "Members: {count}")]
SCHEDULED_ROLES = []

TOTAL_MEMBER_COUNT_CHANNEL_ID = None           # (Optional) A channel renamed with the total human member count.
TOTAL_MEMBER_COUNT_NAME_FORMAT = "All Members: {count}"

# Discord allows only 2 renames per channel every 10 minutes, so keep this at 5 or above.
INTERVAL_MINUTES = 5

# --- 🎨 EMBEDS 🎨 ---
EMBED_FOOTER_TEXT = None                       # (Optional) Footer text on !count and !help embeds.
EMBED_FOOTER_ICON = None                       # (Optional) Footer icon URL.

# --- 📁 EXPORTS 📁 ---
# Where !export writes its checkpoint, temporary and final CSV files.
EXPORT_DIR = "exports"

FETCH_DELAY_SECONDS = 0.25                     # Pause before every message-history request.
MESSAGE_PAGE_SIZE = 100                        # Messages per history request (Discord caps this at 100).
EXPORT_BATCH_SIZE = 1000                       # Members per batch in the progress report.
EXPORT_FLUSH_ROWS = 100                        # Rows buffered in memory before they are written to disk.
CHECKPOINT_EVERY = 10                          # Save resume progress after this many members.
PROGRESS_INTERVAL_SECONDS = 5                  # Minimum time between progress message edits.

# --- 🧹 PURGE 🧹 ---
PURGE_INTERVAL_SECONDS = 3600                  # How often a running purge removes its next batch.
PURGE_GRACE_HOURS = 24                         # Members who joined more recently than this are never removed.
PURGE_REMOVAL_DELAY_SECONDS = 1                # Pause between two removals within a batch.

# --- 💬 ACTIVITY TRACKING 💬 ---
# Message counts shown by "!count export" are cleared every this many hours.
ACTIVITY_RESET_HOURS = 24

# --- 🐞 DEBUGGING 🐞 ---
# Set to True for verbose console logs (per-member count decisions, page fetches, checkpoint saves).
DEBUG_MODE = False
LOG_DIR = "logs"
